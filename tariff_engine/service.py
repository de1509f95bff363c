"""Pricing workflow - previews and committed fees on top of the reduction engine"""

import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from tariff_engine.config import settings
from tariff_engine.domain.decision_tree import DecisionTree
from tariff_engine.domain.engine import ReductionEngine, TariffConfiguration
from tariff_engine.domain.exceptions import ConfigurationError, DomainException
from tariff_engine.domain.models import Bounds, DisplayMode, EvaluationContext, FeeComputation, PersonProfile, RuleScope
from tariff_engine.domain.rules import ReductionRule
from tariff_engine.infrastructure.database.repositories import DecisionTreeRepository, ReductionLedgerRepository
from tariff_engine.infrastructure.observability.logging import log_fee_computation
from tariff_engine.infrastructure.observability.metrics import (
    bounds_computation_counter,
    record_computation,
    record_tree_lock,
)

logger = logging.getLogger(__name__)


class PricingService:
    """
    Entry point used by fee creation and the pricing preview screen.

    Previews are read-only and can be repeated at will. Committing a fee is
    the first real use of the tariff's decision tree: it locks the tree and
    persists the ledger rows in the caller's session.
    """

    def __init__(self, configuration: TariffConfiguration, db: Optional[Session] = None):
        self.engine = ReductionEngine(configuration)
        self.configuration = configuration
        self.db = db

    def preview_bounds(self, tariff_id: int, fee_type_id: int) -> Bounds:
        """Price range shown before a person is selected"""
        bounds = self.engine.compute_bounds(tariff_id, fee_type_id)
        if self.configuration.tree_for(tariff_id) is None:
            # no tree to carry a display mode, fall back to the configured one
            bounds = replace(bounds, display_mode=DisplayMode(settings.default_display_mode))
        if settings.metrics_enabled:
            bounds_computation_counter.inc()
        return bounds

    def preview_fee(
        self,
        tariff_id: int,
        fee_type_id: int,
        profile: PersonProfile,
        context: Optional[EvaluationContext] = None,
        scope: Optional[RuleScope] = None,
        manual_rules: Sequence[ReductionRule] = (),
    ) -> FeeComputation:
        """Live price for a selected person; no lock, no persistence"""
        start_time = time.time()
        computation = self.engine.compute_fee(tariff_id, fee_type_id, profile, context, scope, manual_rules)
        self._observe("preview", computation, start_time)
        return computation

    def commit_fee(
        self,
        fee_id: int,
        tariff_id: int,
        fee_type_id: int,
        profile: PersonProfile,
        context: Optional[EvaluationContext] = None,
        scope: Optional[RuleScope] = None,
        manual_rules: Sequence[ReductionRule] = (),
    ) -> FeeComputation:
        """
        Price a fee for real.

        Flow:
        1. Compute the fee (same result as the last preview)
        2. Lock the stored decision tree, once, with a conditional update
        3. Persist one ledger row per applied reduction
        4. Commit; roll back and re-raise on any failure
        5. Only then mark the in-memory tree locked
        """
        if self.db is None:
            raise ConfigurationError("Committing a fee requires a database session")

        start_time = time.time()
        now = datetime.now(timezone.utc)
        tree = self.configuration.tree_for(tariff_id)
        tree_id = tree.id if tree is not None else None
        transitioned = None
        try:
            computation = self.engine.compute_fee(tariff_id, fee_type_id, profile, context, scope, manual_rules)

            trees = DecisionTreeRepository(self.db)
            if tree_id is not None:
                transitioned = trees.lock(tree_id, now)

            ReductionLedgerRepository(self.db).record(fee_id, computation, decision_tree_id=tree_id)
            self.db.commit()

        except DomainException as e:
            self.db.rollback()
            logger.error(f"Fee commit failed: {e}", extra={"fee_id": fee_id, "tariff_id": tariff_id})
            raise

        except Exception as e:
            self.db.rollback()
            logger.error(f"Unexpected error during fee commit: {e}", extra={"fee_id": fee_id})
            raise

        if tree is not None:
            self._lock_in_memory(tree, transitioned, now)

        self._observe("commit", computation, start_time, fee_id)
        return computation

    def _lock_in_memory(self, tree: DecisionTree, transitioned: Optional[bool], now: datetime) -> None:
        """Mirror the committed lock on the shared tree, keeping the stored locked_at"""
        if not tree.locked and transitioned is False:
            # another process locked the stored row first
            stored = DecisionTreeRepository(self.db).get(tree.id)
            now = stored.locked_at or now
        locked_here = tree.lock(now)
        if transitioned is None:
            transitioned = locked_here
        if settings.metrics_enabled:
            record_tree_lock(transitioned)

    def _observe(self, mode: str, computation: FeeComputation, start_time: float, fee_id: Optional[int] = None) -> None:
        duration_ms = (time.time() - start_time) * 1000
        if settings.metrics_enabled:
            record_computation(mode, computation)
        log_fee_computation(mode, computation, duration_ms, fee_id)
