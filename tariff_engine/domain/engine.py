"""Reduction engine - prices one fee from tariff configuration and a person profile"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, Optional, Sequence, Tuple

from tariff_engine.domain.brackets import IncomeBracketTable, resolve_bracket_amount, resolve_scope
from tariff_engine.domain.decision_tree import DecisionTree
from tariff_engine.domain.exceptions import ConfigurationError
from tariff_engine.domain.models import (
    Bounds,
    EvaluationContext,
    FeeComputation,
    PersonProfile,
    ReductionApplicationRecord,
    RuleScope,
    TariffTypeAmount,
)
from tariff_engine.domain.rules import ReductionRule, find_applicable
from tariff_engine.utils.money import floor_at_zero

logger = logging.getLogger(__name__)


@dataclass
class TariffConfiguration:
    """Configuration already loaded by the caller; read-only during computation"""

    amounts: Iterable[TariffTypeAmount] = ()
    trees: Iterable[DecisionTree] = ()
    bracket_tables: Iterable[IncomeBracketTable] = ()
    rules: Iterable[ReductionRule] = ()
    _amount_index: Dict[Tuple[int, int], TariffTypeAmount] = field(init=False, repr=False)
    _tree_index: Dict[int, DecisionTree] = field(init=False, repr=False)

    def __post_init__(self):
        self.amounts = tuple(self.amounts)
        self.trees = tuple(self.trees)
        self.bracket_tables = tuple(self.bracket_tables)
        self.rules = tuple(self.rules)

        self._amount_index = {}
        for row in self.amounts:
            if not row.active:
                continue
            key = (row.tariff_id, row.fee_type_id)
            if key in self._amount_index:
                raise ConfigurationError(f"Duplicate active base amount for tariff/fee type {key}")
            self._amount_index[key] = row

        # Latest version wins when several trees exist for one tariff
        self._tree_index = {}
        for tree in sorted(self.trees, key=lambda t: t.tree_version):
            self._tree_index[tree.tariff_id] = tree

    def base_amount(self, tariff_id: int, fee_type_id: int) -> Decimal:
        row = self._amount_index.get((tariff_id, fee_type_id))
        if row is None:
            raise ConfigurationError(f"No active base amount for tariff {tariff_id} and fee type {fee_type_id}")
        return row.base_amount

    def tree_for(self, tariff_id: int) -> Optional[DecisionTree]:
        return self._tree_index.get(tariff_id)

    def bracket_table(self, scope: RuleScope, table_id: Optional[int] = None) -> Optional[IncomeBracketTable]:
        """Explicitly requested table, else the scope's default table"""
        if table_id is not None:
            for table in self.bracket_tables:
                if table.id == table_id:
                    return table
            raise ConfigurationError(f"Bracket table {table_id} not found")
        return resolve_scope(scope.structure_id, scope.organization_id, self.bracket_tables)


class ReductionEngine:
    """
    Deterministic fee computation: bracket pricing, then decision tree,
    then reduction rules, then operator-selected manual reductions.

    Pure: never locks trees, never persists ledger rows.
    """

    def __init__(self, configuration: TariffConfiguration):
        self.configuration = configuration

    def base_amount(self, tariff_id: int, fee_type_id: int) -> Decimal:
        return self.configuration.base_amount(tariff_id, fee_type_id)

    def compute_bounds(self, tariff_id: int, fee_type_id: int) -> Bounds:
        base_amount = self.base_amount(tariff_id, fee_type_id)
        tree = self.configuration.tree_for(tariff_id)
        if tree is None:
            return Bounds(min=base_amount, max=base_amount)
        return tree.compute_bounds(base_amount)

    def compute_fee(
        self,
        tariff_id: int,
        fee_type_id: int,
        profile: PersonProfile,
        context: Optional[EvaluationContext] = None,
        scope: Optional[RuleScope] = None,
        manual_rules: Sequence[ReductionRule] = (),
    ) -> FeeComputation:
        """
        Price one fee for one person.

        Raises:
            ConfigurationError: no base amount for the tariff/fee type pair,
                or an explicitly requested bracket table is unknown
        """
        context = context or EvaluationContext()
        scope = scope or RuleScope()

        # 1. Base amount, then bracket pricing
        base_amount = self.base_amount(tariff_id, fee_type_id)
        table = self.configuration.bracket_table(scope, context.bracket_table_id)
        starting_amount, bracket = resolve_bracket_amount(
            table, context.effective_income_index(profile), base_amount, fee_type_id
        )

        result = FeeComputation(
            tariff_id=tariff_id,
            fee_type_id=fee_type_id,
            base_amount=base_amount,
            starting_amount=starting_amount,
            bracket_id=bracket.id if bracket else None,
        )
        running = starting_amount

        # 2. Decision tree
        tree = self.configuration.tree_for(tariff_id)
        if tree is not None:
            evaluation = tree.explain(profile, context, running, start_order=1)
            result.tree_path = evaluation.path
            result.tree_trace = evaluation.trace
            for record in evaluation.records:
                running = floor_at_zero(running - record.resulting_reduction_amount)
            result.applied_reductions.extend(evaluation.records)

        # 3. Automatic rules, 4. manual rules picked by the operator
        rules, skipped = find_applicable(self.configuration.rules, profile, context, scope, table)
        result.warnings.extend(skipped)
        manual = [r for r in manual_rules if r.active]

        snapshot = context.snapshot(profile)
        if bracket is not None:
            snapshot["bracket_id"] = bracket.id
        non_cumulable_applied = False

        for rule in [*rules, *manual]:
            if not rule.cumulable and non_cumulable_applied:
                logger.info(
                    "Non-cumulable reduction not applied",
                    extra={"rule_code": rule.code, "tariff_id": tariff_id},
                )
                continue

            calculation_base = starting_amount if rule.compute_on_initial_amount else running
            applied = min(rule.calculate_reduction(running, starting_amount), running)
            result.applied_reductions.append(
                ReductionApplicationRecord(
                    source_type=rule.source_type,
                    label=rule.label,
                    amount_rule=rule.amount_rule,
                    applied_order=len(result.applied_reductions) + 1,
                    base_amount_at_application=calculation_base,
                    resulting_reduction_amount=applied,
                    context_snapshot=dict(snapshot),
                    rule_id=rule.id,
                    rule_code=rule.code,
                )
            )
            running = floor_at_zero(running - applied)
            if not rule.cumulable:
                non_cumulable_applied = True

        result.final_amount = floor_at_zero(running)
        logger.debug(
            "Fee computed",
            extra={
                "tariff_id": tariff_id,
                "fee_type_id": fee_type_id,
                "final_amount": str(result.final_amount),
                "reductions": len(result.applied_reductions),
                "skipped_rules": len(result.warnings),
            },
        )
        return result
