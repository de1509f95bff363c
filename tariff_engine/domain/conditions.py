"""Decision-tree branch conditions, interpreted per node type"""

import logging
import operator
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from tariff_engine.domain.exceptions import ConfigurationError
from tariff_engine.domain.models import EvaluationContext, PersonProfile
from tariff_engine.utils.date_utils import age_on, membership_years
from tariff_engine.utils.money import to_decimal

logger = logging.getLogger(__name__)

DEFAULT_CONDITION_TYPES = {"default", "other"}

COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "=": operator.eq,
    "==": operator.eq,
}

Comparator = Literal["<", "<=", ">", ">=", "=", "=="]
Number = Union[int, float]


# -- condition payloads --------------------------------------------------------


class _Condition(BaseModel):
    model_config = ConfigDict(extra="allow")


class CommuneCondition(_Condition):
    type: Optional[Literal["communes", "community"]] = None
    ids: Optional[List[int]] = None
    id: Optional[int] = None
    commune_id: Optional[int] = None


class IncomeCondition(_Condition):
    min: Optional[Number] = None
    max: Optional[Number] = None
    lower: Optional[Number] = None
    upper: Optional[Number] = None


class AgeCondition(_Condition):
    operator: Optional[Union[Comparator, Literal["between"]]] = None
    value: Optional[int] = None
    min: Optional[int] = None
    max: Optional[int] = None


class LoyaltyCondition(_Condition):
    operator: Optional[Comparator] = None
    years: Optional[int] = None
    years_min: Optional[int] = None
    years_max: Optional[int] = None
    min: Optional[int] = None
    max: Optional[int] = None


class EnrollmentCondition(_Condition):
    operator: Optional[Comparator] = None
    count: Optional[int] = None
    count_min: Optional[int] = None
    count_max: Optional[int] = None
    min: Optional[int] = None
    max: Optional[int] = None


class TagCondition(_Condition):
    tags: List[Union[int, str]] = []
    mode: Literal["contains", "not_contains"] = "contains"


CONDITION_MODELS = {
    "COMMUNE": CommuneCondition,
    "QF": IncomeCondition,
    "AGE": AgeCondition,
    "LOYALTY": LoyaltyCondition,
    "MULTI_ENROLLMENT": EnrollmentCondition,
    "TAG": TagCondition,
    "SOCIAL_STATUS": TagCondition,
}


def is_default_condition(condition: Optional[Mapping[str, Any]]) -> bool:
    return bool(condition) and condition.get("type") in DEFAULT_CONDITION_TYPES


def normalize_condition(node_type: str, condition: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Validate a branch condition for its node type and coerce its values.

    Raises:
        ConfigurationError: values of the wrong type for this node type
    """
    condition = dict(condition or {})
    model = CONDITION_MODELS.get(node_type)
    if not condition or is_default_condition(condition) or model is None:
        return condition
    try:
        parsed = model.model_validate(condition)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid {node_type} branch condition {condition}: {e.errors()}") from e
    return {**condition, **parsed.model_dump(exclude_unset=True)}


def compare(value, op: str, threshold) -> bool:
    """Apply a configured comparator; unknown operators never match"""
    func = COMPARATORS.get(op)
    if func is None:
        return False
    return func(value, threshold)


def _within(value, condition: Mapping[str, Any], low_key: str, high_key: str) -> bool:
    """Inclusive min/max check; False when neither bound is configured"""
    low = condition.get(low_key, condition.get("min"))
    high = condition.get(high_key, condition.get("max"))
    if low is None and high is None:
        return False
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def _describe_range(condition: Mapping[str, Any], low_key: str, high_key: str) -> str:
    low = condition.get(low_key, condition.get("min"))
    high = condition.get(high_key, condition.get("max"))
    return f"[{'-inf' if low is None else low}, {'+inf' if high is None else high}]"


def _verdict(hit: bool) -> str:
    return "OK" if hit else "NO"


# -- matchers: (matched, details) ----------------------------------------------


def _match_commune(condition, profile: PersonProfile, context: EvaluationContext) -> Tuple[bool, str]:
    commune_id = profile.effective_commune_id
    if commune_id is None:
        return False, "commune not set"
    if condition.get("type") == "community":
        community_id = condition.get("id") or (condition.get("ids") or [None])[0]
        hit = community_id is not None and community_id in profile.community_ids
        return hit, f"commune {commune_id} {'in' if hit else 'not in'} community {community_id}"
    if condition.get("type") == "communes" and condition.get("ids"):
        hit = commune_id in condition["ids"]
        return hit, f"commune {commune_id} {'in' if hit else 'not in'} {list(condition['ids'])}"
    if condition.get("commune_id") is not None:
        hit = commune_id == condition["commune_id"]
        return hit, f"commune {commune_id} {'=' if hit else '!='} {condition['commune_id']}"
    return False, "invalid commune condition"


def _match_income(condition, profile: PersonProfile, context: EvaluationContext) -> Tuple[bool, str]:
    income = context.effective_income_index(profile)
    if income is None:
        return False, "income index not set"
    bounded = {
        k: to_decimal(v) for k, v in condition.items() if k in ("min", "max", "lower", "upper") and v is not None
    }
    hit = _within(income, bounded, "lower", "upper")
    return hit, f"QF={income}, condition {_describe_range(bounded, 'lower', 'upper')} => {_verdict(hit)}"


def _match_age(condition, profile: PersonProfile, context: EvaluationContext) -> Tuple[bool, str]:
    if profile.birth_date is None:
        return False, "birth date not set"
    age = age_on(profile.birth_date, context.effective_reference_date())
    op = condition.get("operator")
    if op in COMPARATORS and condition.get("value") is not None:
        hit = compare(age, op, condition["value"])
        expected = f"{op} {condition['value']}"
    else:
        hit = _within(age, condition, "min", "max")
        expected = _describe_range(condition, "min", "max")
    return hit, f"age={age}, condition {expected} => {_verdict(hit)}"


def _match_loyalty(condition, profile: PersonProfile, context: EvaluationContext) -> Tuple[bool, str]:
    if profile.first_membership_date is None:
        return False, "no membership history"
    years = membership_years(profile.first_membership_date, context.effective_reference_date())
    if condition.get("operator") and condition.get("years") is not None:
        hit = compare(years, condition["operator"], condition["years"])
        expected = f"{condition['operator']} {condition['years']}"
    else:
        hit = _within(years, condition, "years_min", "years_max")
        expected = _describe_range(condition, "years_min", "years_max")
    return hit, f"membership={years} years, condition {expected} => {_verdict(hit)}"


def _match_enrollments(condition, profile: PersonProfile, context: EvaluationContext) -> Tuple[bool, str]:
    count = context.household_enrollments
    if count is None:
        return False, "household enrollments not set"
    if condition.get("operator") and condition.get("count") is not None:
        hit = compare(count, condition["operator"], condition["count"])
        expected = f"{condition['operator']} {condition['count']}"
    else:
        hit = _within(count, condition, "count_min", "count_max")
        expected = _describe_range(condition, "count_min", "count_max")
    return hit, f"enrollments={count}, condition {expected} => {_verdict(hit)}"


def _match_tags(condition, owned) -> Tuple[bool, str]:
    required = condition.get("tags") or []
    if not required:
        return False, "no tag to check"
    found = any(tag in owned for tag in required)
    mode = condition.get("mode", "contains")
    if mode == "contains":
        hit = found
    elif mode == "not_contains":
        hit = not found
    else:
        return False, f"unknown tag mode {mode}"
    owned_str = ", ".join(sorted(str(t) for t in owned))
    return hit, f"tags [{owned_str}], condition {mode} {list(required)} => {_verdict(hit)}"


MATCHERS: Dict[str, Callable[[Mapping[str, Any], PersonProfile, EvaluationContext], Tuple[bool, str]]] = {
    "COMMUNE": _match_commune,
    "QF": _match_income,
    "AGE": _match_age,
    "LOYALTY": _match_loyalty,
    "MULTI_ENROLLMENT": _match_enrollments,
    "TAG": lambda c, p, ctx: _match_tags(c, p.tags),
    "SOCIAL_STATUS": lambda c, p, ctx: _match_tags(c, p.status_tags),
}


def explain_branch(
    node_type: str,
    condition: Optional[Mapping[str, Any]],
    profile: PersonProfile,
    context: EvaluationContext,
) -> Tuple[bool, str]:
    """Whether a branch condition holds for this profile, with a readable reason"""
    if not condition:
        return False, "no condition"
    if is_default_condition(condition):
        return True, "default branch"
    matcher = MATCHERS.get(node_type)
    if matcher is None:
        logger.warning("Unknown condition type", extra={"node_type": node_type})
        return False, f"unknown node type {node_type}"
    return matcher(condition, profile, context)


def branch_matches(
    node_type: str,
    condition: Optional[Mapping[str, Any]],
    profile: PersonProfile,
    context: EvaluationContext,
) -> bool:
    return explain_branch(node_type, condition, profile, context)[0]
