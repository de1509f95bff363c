"""Data access layer for decision trees and the reduction ledger"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import false, func
from sqlalchemy.orm import Session

from tariff_engine.domain.decision_tree import DecisionTree
from tariff_engine.domain.exceptions import ConfigurationError, LockViolation
from tariff_engine.domain.models import (
    AmountRule,
    DisplayMode,
    FeeComputation,
    ReductionApplicationRecord,
    SourceType,
)
from tariff_engine.infrastructure.database.models import DecisionTreeRow, FeeReductionRow
from tariff_engine.utils.money import ZERO


def _to_domain(row: DecisionTreeRow) -> DecisionTree:
    return DecisionTree.from_dict(
        tariff_id=row.tariff_id,
        document=row.tree_json,
        display_mode=DisplayMode(row.display_mode),
        locked=row.locked,
        locked_at=row.locked_at,
        id=row.id,
        tree_version=row.tree_version,
    )


class DecisionTreeRepository:
    """Repository for tariff decision trees"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, tree: DecisionTree, structure_id: Optional[int] = None) -> DecisionTreeRow:
        """Persist a new tree version and give the domain object its id"""
        row = DecisionTreeRow(
            tariff_id=tree.tariff_id,
            tree_version=tree.tree_version,
            display_mode=tree.display_mode.value,
            tree_json=tree.to_dict(),
            locked=tree.locked,
            locked_at=tree.locked_at,
            structure_id=structure_id,
        )
        self.db.add(row)
        self.db.flush()  # Get ID without committing
        tree.id = row.id
        return row

    def get(self, tree_id: int) -> Optional[DecisionTree]:
        row = self.db.get(DecisionTreeRow, tree_id)
        return _to_domain(row) if row else None

    def get_for_tariff(self, tariff_id: int) -> Optional[DecisionTree]:
        """Latest version of a tariff's tree"""
        row = (
            self.db.query(DecisionTreeRow)
            .filter(DecisionTreeRow.tariff_id == tariff_id)
            .order_by(DecisionTreeRow.tree_version.desc())
            .first()
        )
        return _to_domain(row) if row else None

    def lock(self, tree_id: int, now: Optional[datetime] = None) -> bool:
        """
        Lock a tree with a single conditional update keyed on the unlocked state.

        Concurrent first uses race on the same row; only one UPDATE matches,
        so exactly one caller gets True. Others get False and see it locked.

        Raises:
            ConfigurationError: tree does not exist
        """
        updated = (
            self.db.query(DecisionTreeRow)
            .filter(DecisionTreeRow.id == tree_id, DecisionTreeRow.locked == false())
            .update(
                {"locked": True, "locked_at": now or datetime.now(timezone.utc)},
                synchronize_session=False,
            )
        )
        if updated == 0 and self.db.get(DecisionTreeRow, tree_id) is None:
            raise ConfigurationError(f"Decision tree {tree_id} not found")
        return updated == 1

    def save_nodes(self, tree: DecisionTree) -> None:
        """
        Write edited content of a draft tree.

        Raises:
            LockViolation: the stored tree is locked
            ConfigurationError: tree was never persisted
        """
        if tree.id is None:
            raise ConfigurationError("Cannot save a decision tree that was never added")
        updated = (
            self.db.query(DecisionTreeRow)
            .filter(DecisionTreeRow.id == tree.id, DecisionTreeRow.locked == false())
            .update(
                {"tree_json": tree.to_dict(), "display_mode": tree.display_mode.value},
                synchronize_session=False,
            )
        )
        if updated == 0:
            if self.db.get(DecisionTreeRow, tree.id) is None:
                raise ConfigurationError(f"Decision tree {tree.id} not found")
            raise LockViolation(f"Decision tree {tree.id} is locked; duplicate it to make changes")

    def duplicate(self, tree_id: int) -> DecisionTree:
        """Store an unlocked copy at version + 1, leaving the source row untouched"""
        source = self.get(tree_id)
        if source is None:
            raise ConfigurationError(f"Decision tree {tree_id} not found")
        copy = source.duplicate()
        self.add(copy, structure_id=self.db.get(DecisionTreeRow, tree_id).structure_id)
        return copy


class ReductionLedgerRepository:
    """Write-once ledger of reductions applied to fees"""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        fee_id: int,
        computation: FeeComputation,
        decision_tree_id: Optional[int] = None,
    ) -> List[FeeReductionRow]:
        """Insert one row per applied reduction"""
        rows = []
        for record in computation.applied_reductions:
            row = FeeReductionRow(
                fee_id=fee_id,
                decision_tree_id=decision_tree_id if record.source_type is SourceType.DECISION_TREE else None,
                rule_id=record.rule_id,
                rule_code=record.rule_code,
                branch_code=record.branch_code,
                source_type=record.source_type.value,
                label=record.label,
                calculation_type=record.amount_rule.calculation_type.value,
                value=record.amount_rule.value,
                applied_order=record.applied_order,
                base_amount=record.base_amount_at_application,
                reduction_amount=record.resulting_reduction_amount,
                context_json=dict(record.context_snapshot),
            )
            self.db.add(row)
            rows.append(row)
        self.db.flush()
        return rows

    def list_for_fee(self, fee_id: int) -> List[ReductionApplicationRecord]:
        rows = (
            self.db.query(FeeReductionRow)
            .filter(FeeReductionRow.fee_id == fee_id)
            .order_by(FeeReductionRow.applied_order.asc())
            .all()
        )
        return [
            ReductionApplicationRecord(
                source_type=SourceType(row.source_type),
                label=row.label,
                amount_rule=AmountRule(row.calculation_type, row.value),
                applied_order=row.applied_order,
                base_amount_at_application=Decimal(row.base_amount),
                resulting_reduction_amount=Decimal(row.reduction_amount),
                context_snapshot=row.context_json or {},
                rule_id=row.rule_id,
                rule_code=row.rule_code,
                branch_code=row.branch_code,
            )
            for row in rows
        ]

    def total_for_fee(self, fee_id: int) -> Decimal:
        total = (
            self.db.query(func.sum(FeeReductionRow.reduction_amount))
            .filter(FeeReductionRow.fee_id == fee_id)
            .scalar()
        )
        return Decimal(total) if total is not None else ZERO
