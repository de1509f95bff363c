"""Structured JSON logging for pricing observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from pythonjsonlogger import jsonlogger

from tariff_engine.config import settings
from tariff_engine.domain.models import FeeComputation


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str | None = None) -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level or settings.log_level)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_fee_computation(
    mode: str,
    computation: FeeComputation,
    duration_ms: float,
    fee_id: int | None = None,
) -> None:
    """Log structured fee computation outcome for analysis"""
    logging.getLogger("tariff_engine.pricing").info(
        "Fee computed",
        extra={
            "step": f"fee_{mode}",
            "fee_id": fee_id,
            "tariff_id": computation.tariff_id,
            "fee_type_id": computation.fee_type_id,
            "base_amount": str(computation.base_amount),
            "final_amount": str(computation.final_amount),
            "reduction_count": len(computation.applied_reductions),
            "skipped_rules": [w.rule_code for w in computation.warnings],
            "duration_ms": duration_ms,
        },
    )
