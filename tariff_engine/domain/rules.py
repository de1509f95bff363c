"""Independently configurable reduction rules and their matching logic"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from tariff_engine.domain.brackets import IncomeBracketTable
from tariff_engine.domain.conditions import compare
from tariff_engine.domain.exceptions import ConfigurationError, RuleSkipped
from tariff_engine.domain.models import (
    AmountRule,
    EvaluationContext,
    PersonProfile,
    RuleScope,
    SkippedRule,
    SourceType,
)
from tariff_engine.utils.date_utils import age_on, membership_years

logger = logging.getLogger(__name__)

DEFAULT_SIBLING_MIN_RANK = 3
DEFAULT_LOYALTY_MIN_YEARS = 5


class _Conditions(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CommuneConditions(_Conditions):
    commune_ids: List[int] = Field(..., min_length=1)


class IncomeBracketConditions(_Conditions):
    """Either explicit bracket ids or a numeric [min, max) range, never both"""

    bracket_ids: Optional[List[int]] = None
    min: Optional[Decimal] = None
    max: Optional[Decimal] = None

    @model_validator(mode="after")
    def _one_style(self):
        by_id = bool(self.bracket_ids)
        by_range = self.min is not None or self.max is not None
        if by_id and by_range:
            raise ValueError("bracket_ids and min/max range are mutually exclusive")
        if not by_id and not by_range:
            raise ValueError("either bracket_ids or a min/max range is required")
        return self


class SocialStatusConditions(_Conditions):
    statuses: List[str] = Field(..., min_length=1)


class SiblingRankConditions(_Conditions):
    min_rank: int = Field(DEFAULT_SIBLING_MIN_RANK, ge=1)


class LoyaltyConditions(_Conditions):
    min_years: int = Field(DEFAULT_LOYALTY_MIN_YEARS, ge=0)


class PartnershipConditions(_Conditions):
    partnerships: List[str] = Field(..., min_length=1)


class AgeConditions(_Conditions):
    age_threshold: int = Field(..., ge=0)
    comparator: Literal["<", "<=", ">", ">=", "="] = ">="


CONDITION_MODELS = {
    SourceType.COMMUNE: CommuneConditions,
    SourceType.INCOME_BRACKET: IncomeBracketConditions,
    SourceType.SOCIAL_STATUS: SocialStatusConditions,
    SourceType.SIBLING_RANK: SiblingRankConditions,
    SourceType.LOYALTY: LoyaltyConditions,
    SourceType.PARTNERSHIP: PartnershipConditions,
    SourceType.AGE: AgeConditions,
}


@dataclass(frozen=True)
class ReductionRule:
    """A toggleable, auto-matching discount"""

    id: int
    code: str
    label: str
    source_type: SourceType
    amount_rule: AmountRule
    conditions: Dict[str, Any] = field(default_factory=dict)
    application_order: int = 100
    cumulable: bool = True
    compute_on_initial_amount: bool = False
    active: bool = True
    structure_id: Optional[int] = None
    organization_id: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "source_type", SourceType(self.source_type))
        if self.source_type is SourceType.DECISION_TREE:
            raise ConfigurationError(f"Rule {self.code}: decision_tree is not a rule source type")

    def _parse_conditions(self):
        model = CONDITION_MODELS[self.source_type]
        try:
            return model.model_validate(self.conditions or {})
        except ValidationError as e:
            raise RuleSkipped(self.code, f"invalid {self.source_type.value} conditions: {e.errors()}") from e

    def matches(
        self,
        profile: PersonProfile,
        context: EvaluationContext,
        bracket_table: Optional[IncomeBracketTable] = None,
    ) -> bool:
        """
        Whether this rule applies to the person.

        Raises:
            RuleSkipped: condition data malformed or unresolvable for this profile
        """
        source = self.source_type
        if source is SourceType.MANUAL:
            return False
        if source is SourceType.DISABILITY:
            return profile.disability is True

        conditions = self._parse_conditions()
        if source is SourceType.COMMUNE:
            return profile.effective_commune_id in conditions.commune_ids
        elif source is SourceType.INCOME_BRACKET:
            return self._match_income(conditions, profile, context, bracket_table)
        elif source is SourceType.SOCIAL_STATUS:
            return bool(profile.status_tags.intersection(conditions.statuses))
        elif source is SourceType.SIBLING_RANK:
            return context.sibling_rank >= conditions.min_rank
        elif source is SourceType.LOYALTY:
            if profile.first_membership_date is None:
                return False
            years = membership_years(profile.first_membership_date, context.effective_reference_date())
            return years >= conditions.min_years
        elif source is SourceType.PARTNERSHIP:
            return bool(profile.partnership_tags.intersection(conditions.partnerships))
        elif source is SourceType.AGE:
            if profile.birth_date is None:
                return False
            age = age_on(profile.birth_date, context.effective_reference_date())
            return compare(age, conditions.comparator, conditions.age_threshold)

        raise RuleSkipped(self.code, f"unsupported source type {source.value}")

    def _match_income(
        self,
        conditions: IncomeBracketConditions,
        profile: PersonProfile,
        context: EvaluationContext,
        bracket_table: Optional[IncomeBracketTable],
    ) -> bool:
        income = context.effective_income_index(profile)
        if income is None:
            return False

        if conditions.bracket_ids:
            if bracket_table is None:
                raise RuleSkipped(self.code, "bracket ids configured but no bracket table applies")
            bracket = bracket_table.resolve_bracket(income)
            return bracket is not None and bracket.id in conditions.bracket_ids

        lower = conditions.min if conditions.min is not None else Decimal("0")
        return income >= lower and (conditions.max is None or income < conditions.max)

    def calculate_reduction(self, current_amount: Decimal, initial_amount: Optional[Decimal] = None) -> Decimal:
        """Reduction on the amount as reduced so far, or on the initial amount when configured"""
        if self.compute_on_initial_amount and initial_amount is not None:
            return self.amount_rule.apply(initial_amount)
        return self.amount_rule.apply(current_amount)


def find_applicable(
    rules: Iterable[ReductionRule],
    profile: PersonProfile,
    context: EvaluationContext,
    scope: Optional[RuleScope] = None,
    bracket_table: Optional[IncomeBracketTable] = None,
) -> Tuple[List[ReductionRule], List[SkippedRule]]:
    """
    Active, non-manual rules visible to the scope that match the person.

    Returns: (rules sorted by application order then id, skipped-rule warnings)
    """
    scope = scope or RuleScope()
    applicable: List[ReductionRule] = []
    skipped: List[SkippedRule] = []

    for rule in rules:
        if not rule.active or rule.source_type is SourceType.MANUAL:
            continue
        if not scope.can_see(rule.structure_id, rule.organization_id):
            continue
        try:
            if rule.matches(profile, context, bracket_table):
                applicable.append(rule)
        except RuleSkipped as e:
            logger.warning(
                "Reduction rule skipped",
                extra={"rule_id": rule.id, "rule_code": rule.code, "reason": e.reason},
            )
            skipped.append(
                SkippedRule(rule_id=rule.id, rule_code=rule.code, source_type=rule.source_type, reason=e.reason)
            )

    applicable.sort(key=lambda r: (r.application_order, r.id))
    return applicable, skipped
