"""
E2E pricing scenarios for typical adherent personas.

Full pipeline against the sqlite test database: income bracket pricing,
the sample decision tree, automatic rules, then commit with tree locking
and ledger persistence.

Personas:
- third_child: low-income resident family, third child enrolled
- partner_employee: high-income non-resident, works council partnership
- disabled_senior: loyal senior resident with a disability card
- third_child_disabled: two non-cumulable reductions competing
- undeclared_income: resident adult who never declared an income index
"""

import pytest
from datetime import date
from decimal import Decimal

from tariff_engine.domain.engine import TariffConfiguration
from tariff_engine.domain.models import AmountRule, EvaluationContext, PersonProfile, SourceType
from tariff_engine.domain.rules import ReductionRule
from tariff_engine.infrastructure.database.models import DecisionTreeRow
from tariff_engine.infrastructure.database.repositories import DecisionTreeRepository, ReductionLedgerRepository
from tariff_engine.service import PricingService

from conftest import ADULT, ANNUAL_TARIFF, CHILD, REFERENCE_DATE


@pytest.fixture
def rules():
    return [
        ReductionRule(
            id=30,
            code="SIBLING_3",
            label="Third child",
            source_type="sibling_rank",
            amount_rule=AmountRule.percentage(50),
            application_order=30,
            cumulable=False,
        ),
        ReductionRule(
            id=35,
            code="CE_ACME",
            label="ACME works council",
            source_type="partnership",
            amount_rule=AmountRule.percentage(15),
            conditions={"partnerships": ["CE_ACME"]},
            application_order=35,
        ),
        ReductionRule(
            id=40,
            code="LOYALTY_5",
            label="Five years of membership",
            source_type="loyalty",
            amount_rule=AmountRule.fixed("10.00"),
            application_order=40,
        ),
        ReductionRule(
            id=50,
            code="DISABILITY",
            label="Disability card",
            source_type="disability",
            amount_rule=AmountRule.percentage(100),
            application_order=50,
            cumulable=False,
        ),
    ]


@pytest.fixture
def service(db, amounts, sample_tree, bracket_table, rules):
    DecisionTreeRepository(db).add(sample_tree)
    db.commit()
    configuration = TariffConfiguration(
        amounts=amounts,
        trees=[sample_tree],
        bracket_tables=[bracket_table],
        rules=rules,
    )
    return PricingService(configuration, db)


@pytest.mark.e2e
def test_third_child(service):
    """
    third_child: QF 300, child fee type
    Expected: bracket override 60.00, resident -6.00, under 26 -30.00, third child 50% -> 12.00
    """
    profile = PersonProfile(id=1, residence_commune_id=74001, income_index=300, birth_date=date(2015, 5, 1))
    context = EvaluationContext(reference_date=REFERENCE_DATE, sibling_rank=3)

    result = service.commit_fee(101, ANNUAL_TARIFF, CHILD, profile, context)

    assert result.starting_amount == Decimal("60.00")
    assert result.tree_path == ["RESIDENT", "YOUNG"]
    assert [r.resulting_reduction_amount for r in result.applied_reductions] == [
        Decimal("6.00"),
        Decimal("30.00"),
        Decimal("12.00"),
    ]
    assert result.final_amount == Decimal("12.00")


@pytest.mark.e2e
def test_partner_employee(service):
    """
    partner_employee: QF 1200, lives outside, 2 years of membership
    Expected: full bracket price 360.00, only the partnership 15% -> 306.00
    """
    profile = PersonProfile(
        id=2,
        residence_commune_id=75000,
        income_index=1200,
        birth_date=date(1985, 2, 1),
        first_membership_date=date(2023, 1, 1),
        partnership_tags={"CE_ACME"},
    )
    context = EvaluationContext(reference_date=REFERENCE_DATE)

    result = service.commit_fee(102, ANNUAL_TARIFF, ADULT, profile, context)

    assert result.bracket_id == 13
    assert result.tree_path == ["OUTSIDE"]
    assert [r.rule_code for r in result.applied_reductions] == ["CE_ACME"]
    assert result.final_amount == Decimal("306.00")


@pytest.mark.e2e
def test_disabled_senior(service):
    """
    disabled_senior: QF 500, 70 years old, member since 2012, disability card
    Expected: 270.00 -> tree 218.00 -> loyalty 208.00 -> disability covers the rest
    """
    profile = PersonProfile(
        id=3,
        residence_commune_id=74002,
        income_index=500,
        birth_date=date(1955, 1, 1),
        first_membership_date=date(2012, 3, 1),
        disability=True,
    )
    context = EvaluationContext(reference_date=REFERENCE_DATE)

    result = service.commit_fee(103, ANNUAL_TARIFF, ADULT, profile, context)

    assert result.starting_amount == Decimal("270.00")
    assert result.final_amount == Decimal("0.00")
    assert [r.applied_order for r in result.applied_reductions] == [1, 2, 3, 4, 5]
    assert result.applied_reductions[-1].source_type is SourceType.DISABILITY
    assert result.applied_reductions[-1].resulting_reduction_amount == Decimal("208.00")

    ledger = ReductionLedgerRepository(service.db)
    assert ledger.total_for_fee(103) == Decimal("270.00")


@pytest.mark.e2e
def test_third_child_disabled(service):
    """
    third_child_disabled: both third-child and disability reductions are non-cumulable
    Expected: third child applies first, disability is not applied
    """
    profile = PersonProfile(
        id=4, residence_commune_id=74001, income_index=300, birth_date=date(2015, 5, 1), disability=True
    )
    context = EvaluationContext(reference_date=REFERENCE_DATE, sibling_rank=3)

    result = service.commit_fee(104, ANNUAL_TARIFF, CHILD, profile, context)

    assert "DISABILITY" not in [r.rule_code for r in result.applied_reductions]
    assert result.final_amount == Decimal("12.00")


@pytest.mark.e2e
def test_undeclared_income(service):
    """
    undeclared_income: no income index, resident adult aged 35
    Expected: base price kept, only the resident 10%
    """
    profile = PersonProfile(id=5, residence_commune_id=74001, birth_date=date(1990, 6, 1))
    context = EvaluationContext(reference_date=REFERENCE_DATE)

    result = service.commit_fee(105, ANNUAL_TARIFF, ADULT, profile, context)

    assert result.bracket_id is None
    assert result.starting_amount == Decimal("360.00")
    assert result.final_amount == Decimal("324.00")


@pytest.mark.e2e
def test_tree_locked_after_first_commit(service, sample_tree):
    """Bounds stay available; the stored tree is locked once the first fee is committed"""
    bounds = service.preview_bounds(ANNUAL_TARIFF, CHILD)
    assert bounds.min == Decimal("186.00")
    assert bounds.max == Decimal("240.00")

    profile = PersonProfile(id=6, residence_commune_id=74001)
    service.preview_fee(ANNUAL_TARIFF, ADULT, profile, EvaluationContext(reference_date=REFERENCE_DATE))
    assert service.db.get(DecisionTreeRow, sample_tree.id).locked is False

    service.commit_fee(106, ANNUAL_TARIFF, ADULT, profile, EvaluationContext(reference_date=REFERENCE_DATE))
    service.db.expire_all()
    assert service.db.get(DecisionTreeRow, sample_tree.id).locked is True
