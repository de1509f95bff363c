"""Domain models - pure Python dataclasses representing pricing entities"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from tariff_engine.domain.exceptions import ConfigurationError
from tariff_engine.utils.money import ZERO, round2, to_decimal


class CalculationType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class SourceType(str, Enum):
    """Where a reduction comes from"""

    COMMUNE = "commune"
    INCOME_BRACKET = "income_bracket"
    SOCIAL_STATUS = "social_status"
    SIBLING_RANK = "sibling_rank"
    LOYALTY = "loyalty"
    PARTNERSHIP = "partnership"
    DISABILITY = "disability"
    AGE = "age"
    MANUAL = "manual"
    DECISION_TREE = "decision_tree"  # ledger entries only, never a rule


class DisplayMode(str, Enum):
    MINIMUM = "minimum"
    MAXIMUM = "maximum"


@dataclass(frozen=True)
class AmountRule:
    """Fixed amount or percentage of a base amount"""

    calculation_type: CalculationType
    value: Decimal

    def __post_init__(self):
        object.__setattr__(self, "calculation_type", CalculationType(self.calculation_type))
        object.__setattr__(self, "value", to_decimal(self.value))
        if self.value < 0:
            raise ConfigurationError(f"Amount rule value must be >= 0, got {self.value}")

    @classmethod
    def fixed(cls, value) -> "AmountRule":
        return cls(CalculationType.FIXED, value)

    @classmethod
    def percentage(cls, value) -> "AmountRule":
        return cls(CalculationType.PERCENTAGE, value)

    def apply(self, base: Decimal) -> Decimal:
        if self.calculation_type is CalculationType.FIXED:
            return round2(self.value)
        return round2(to_decimal(base) * self.value / 100)

    def to_dict(self) -> Dict[str, str]:
        return {"calculation_type": self.calculation_type.value, "value": str(self.value)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AmountRule":
        return cls(CalculationType(data["calculation_type"]), data["value"])


@dataclass(frozen=True)
class TariffTypeAmount:
    """Base amount of a tariff for one fee type (adult, child...)"""

    tariff_id: int
    fee_type_id: int
    base_amount: Decimal
    active: bool = True

    def __post_init__(self):
        object.__setattr__(self, "base_amount", to_decimal(self.base_amount))
        if self.base_amount < 0:
            raise ConfigurationError(
                f"Base amount for tariff {self.tariff_id}/fee type {self.fee_type_id} is negative"
            )


@dataclass(frozen=True)
class RuleScope:
    """Organizational scope of a caller (or owner of a configuration item)"""

    structure_id: Optional[int] = None
    organization_id: Optional[int] = None

    def can_see(self, owner_structure_id: Optional[int], owner_organization_id: Optional[int]) -> bool:
        """Global items are visible everywhere, otherwise structure or organization must match"""
        if owner_structure_id is None and owner_organization_id is None:
            return True
        if owner_structure_id is not None:
            return owner_structure_id == self.structure_id
        return owner_organization_id == self.organization_id


@dataclass(frozen=True)
class PersonProfile:
    """Read-only projection of an adherent, supplied by profile storage"""

    id: Optional[int] = None
    residence_commune_id: Optional[int] = None
    billing_commune_id: Optional[int] = None
    community_ids: FrozenSet[int] = frozenset()  # municipality groups the residence belongs to
    income_index: Optional[Decimal] = None
    status_tags: FrozenSet[str] = frozenset()
    partnership_tags: FrozenSet[str] = frozenset()
    tags: FrozenSet[Any] = frozenset()
    disability: bool = False
    birth_date: Optional[date] = None
    first_membership_date: Optional[date] = None

    def __post_init__(self):
        if self.income_index is not None:
            object.__setattr__(self, "income_index", to_decimal(self.income_index))
        for name in ("community_ids", "status_tags", "partnership_tags", "tags"):
            object.__setattr__(self, name, frozenset(getattr(self, name)))

    @property
    def effective_commune_id(self) -> Optional[int]:
        """Billing municipality override wins over residence"""
        if self.billing_commune_id is not None:
            return self.billing_commune_id
        return self.residence_commune_id


@dataclass(frozen=True)
class EvaluationContext:
    """Per-computation data that is not part of the profile"""

    reference_date: Optional[date] = None
    income_index: Optional[Decimal] = None
    sibling_rank: int = 1
    household_enrollments: Optional[int] = None
    bracket_table_id: Optional[int] = None

    def __post_init__(self):
        if self.income_index is not None:
            object.__setattr__(self, "income_index", to_decimal(self.income_index))

    def effective_reference_date(self) -> date:
        return self.reference_date or date.today()

    def effective_income_index(self, profile: PersonProfile) -> Optional[Decimal]:
        if self.income_index is not None:
            return self.income_index
        return profile.income_index

    def snapshot(self, profile: PersonProfile) -> Dict[str, Any]:
        """JSON-friendly view of the inputs a reduction was decided on"""
        income = self.effective_income_index(profile)
        return {
            "reference_date": self.effective_reference_date().isoformat(),
            "income_index": str(income) if income is not None else None,
            "commune_id": profile.effective_commune_id,
            "sibling_rank": self.sibling_rank,
            "household_enrollments": self.household_enrollments,
        }


@dataclass(frozen=True)
class ReductionApplicationRecord:
    """Ledger row: one reduction applied to one fee, immutable once created"""

    source_type: SourceType
    label: str
    amount_rule: AmountRule
    applied_order: int
    base_amount_at_application: Decimal
    resulting_reduction_amount: Decimal
    context_snapshot: Dict[str, Any] = field(default_factory=dict)
    rule_id: Optional[int] = None
    rule_code: Optional[str] = None
    branch_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_type": self.source_type.value,
            "label": self.label,
            "amount_rule": self.amount_rule.to_dict(),
            "applied_order": self.applied_order,
            "base_amount_at_application": str(self.base_amount_at_application),
            "resulting_reduction_amount": str(self.resulting_reduction_amount),
            "context_snapshot": dict(self.context_snapshot),
            "rule_id": self.rule_id,
            "rule_code": self.rule_code,
            "branch_code": self.branch_code,
        }


@dataclass(frozen=True)
class SkippedRule:
    """Warning attached to a result when a rule could not be evaluated"""

    rule_id: Optional[int]
    rule_code: str
    source_type: SourceType
    reason: str


@dataclass(frozen=True)
class Bounds:
    """Price range a tariff can produce before the person is known"""

    min: Decimal
    max: Decimal
    display_mode: DisplayMode = DisplayMode.MINIMUM

    @property
    def displayed(self) -> Decimal:
        return self.min if self.display_mode is DisplayMode.MINIMUM else self.max


@dataclass(frozen=True)
class BranchCheck:
    """One branch tested while evaluating a node"""

    branch_id: str
    branch_code: str
    matched: bool
    details: str


@dataclass(frozen=True)
class NodeTrace:
    """How a node was evaluated for one person: branches tested, branch kept, sub-nodes"""

    node_id: str
    node_type: str
    depth: int
    checks: Tuple[BranchCheck, ...] = ()
    selected_branch_code: Optional[str] = None
    reduction_amount: Optional[Decimal] = None
    children: Tuple["NodeTrace", ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "depth": self.depth,
            "checks": [
                {"branch_id": c.branch_id, "branch_code": c.branch_code, "matched": c.matched, "details": c.details}
                for c in self.checks
            ],
            "selected_branch_code": self.selected_branch_code,
            "reduction_amount": str(self.reduction_amount) if self.reduction_amount is not None else None,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass
class FeeComputation:
    """Output of a fee computation, ledger rows included"""

    tariff_id: int
    fee_type_id: int
    base_amount: Decimal
    starting_amount: Decimal
    final_amount: Decimal = ZERO
    applied_reductions: List[ReductionApplicationRecord] = field(default_factory=list)
    warnings: List[SkippedRule] = field(default_factory=list)
    bracket_id: Optional[int] = None
    tree_path: List[str] = field(default_factory=list)
    tree_trace: List[NodeTrace] = field(default_factory=list)

    @property
    def total_reduction(self) -> Decimal:
        return self.starting_amount - self.final_amount
