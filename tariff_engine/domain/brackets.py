"""Income bracket (quotient familial) tables and scope resolution"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from tariff_engine.domain.exceptions import ConfigurationError
from tariff_engine.domain.models import AmountRule, RuleScope
from tariff_engine.utils.money import to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Bracket:
    """Contiguous income range [lower_bound, upper_bound) with its pricing rule"""

    id: int
    label: str
    lower_bound: Decimal
    upper_bound: Optional[Decimal]  # None = +inf
    amount_rule: AmountRule
    fee_type_overrides: Dict[int, AmountRule] = field(default_factory=dict)
    active: bool = True

    def __post_init__(self):
        object.__setattr__(self, "lower_bound", to_decimal(self.lower_bound))
        if self.upper_bound is not None:
            object.__setattr__(self, "upper_bound", to_decimal(self.upper_bound))

    def contains(self, value: Optional[Decimal]) -> bool:
        if value is None:
            return False
        value = to_decimal(value)
        if value < self.lower_bound:
            return False
        return self.upper_bound is None or value < self.upper_bound

    def rule_for(self, fee_type_id: Optional[int]) -> AmountRule:
        """Per fee type override when one is configured, else the bracket's own rule"""
        if fee_type_id is not None and fee_type_id in self.fee_type_overrides:
            return self.fee_type_overrides[fee_type_id]
        return self.amount_rule

    def describe(self) -> str:
        if self.upper_bound is None:
            return f"QF >= {self.lower_bound}"
        return f"QF {self.lower_bound}-{self.upper_bound - 1}"


@dataclass(frozen=True)
class IncomeBracketTable:
    """Named set of non-overlapping brackets, optionally owned by a structure or organization"""

    id: int
    code: str
    label: str
    brackets: Tuple[Bracket, ...] = ()
    structure_id: Optional[int] = None
    organization_id: Optional[int] = None
    is_default: bool = False
    active: bool = True

    def __post_init__(self):
        ordered = tuple(sorted(self.brackets, key=lambda b: (b.lower_bound, b.id)))
        object.__setattr__(self, "brackets", ordered)

    @property
    def active_brackets(self) -> List[Bracket]:
        return [b for b in self.brackets if b.active]

    def validate(self) -> None:
        """
        Check bracket bounds and ordering.

        Raises:
            ConfigurationError: inverted bounds, or two active brackets overlapping
        """
        previous: Optional[Bracket] = None
        for bracket in self.active_brackets:
            if bracket.upper_bound is not None and bracket.upper_bound <= bracket.lower_bound:
                raise ConfigurationError(
                    f"Bracket {bracket.label!r} of table {self.code} has upper bound <= lower bound"
                )
            if previous is not None and (
                previous.upper_bound is None or previous.upper_bound > bracket.lower_bound
            ):
                raise ConfigurationError(
                    f"Brackets {previous.label!r} and {bracket.label!r} of table {self.code} overlap"
                )
            previous = bracket

    def resolve_bracket(self, value: Optional[Decimal]) -> Optional[Bracket]:
        """Unique active bracket with lower_bound <= value < upper_bound"""
        if value is None:
            return None
        for bracket in self.active_brackets:
            if bracket.contains(value):
                return bracket
        return None

    def find_bracket(self, bracket_id: int) -> Optional[Bracket]:
        return next((b for b in self.brackets if b.id == bracket_id), None)


def _scope_rank(table: IncomeBracketTable) -> int:
    if table.structure_id is not None:
        return 0
    if table.organization_id is not None:
        return 1
    return 2


def resolve_scope(
    structure_id: Optional[int],
    organization_id: Optional[int],
    candidates: Iterable[IncomeBracketTable],
) -> Optional[IncomeBracketTable]:
    """
    Pick the default bracket table applicable to a caller.

    Priority: structure-specific table, then organization-wide table, then
    global default. Ties resolve to the lowest table id.
    """
    scope = RuleScope(structure_id=structure_id, organization_id=organization_id)
    visible = [
        t
        for t in candidates
        if t.active and t.is_default and scope.can_see(t.structure_id, t.organization_id)
    ]
    if not visible:
        return None
    return min(visible, key=lambda t: (_scope_rank(t), t.id))


def validate_default_uniqueness(tables: Iterable[IncomeBracketTable]) -> None:
    """At most one active default table per (structure, organization) scope"""
    seen: Dict[Tuple[Optional[int], Optional[int]], IncomeBracketTable] = {}
    for table in tables:
        if not (table.active and table.is_default):
            continue
        key = (table.structure_id, table.organization_id)
        if key in seen:
            raise ConfigurationError(
                f"Tables {seen[key].code} and {table.code} are both default for scope {key}"
            )
        seen[key] = table


def resolve_bracket_amount(
    table: Optional[IncomeBracketTable],
    income_index: Optional[Decimal],
    base_amount: Decimal,
    fee_type_id: Optional[int] = None,
) -> Tuple[Decimal, Optional[Bracket]]:
    """
    Price a fee through the bracket table.

    Without income index, table or covering bracket, the base amount stands.

    Returns: (starting_amount, bracket)
    """
    if table is None or income_index is None:
        return base_amount, None

    bracket = table.resolve_bracket(income_index)
    if bracket is None:
        logger.info(
            "No bracket covers income index",
            extra={"table": table.code, "income_index": str(income_index)},
        )
        return base_amount, None

    return bracket.rule_for(fee_type_id).apply(base_amount), bracket
