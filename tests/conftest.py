"""Pytest fixtures for testing"""

import pytest
from datetime import date
from decimal import Decimal
from typing import Generator
from sqlalchemy.orm import Session

from tariff_engine.domain.brackets import Bracket, IncomeBracketTable
from tariff_engine.domain.decision_tree import Branch, DecisionTree, Node
from tariff_engine.domain.engine import TariffConfiguration
from tariff_engine.domain.models import AmountRule, EvaluationContext, PersonProfile, TariffTypeAmount
from tariff_engine.domain.rules import ReductionRule
from tariff_engine.infrastructure.database.models import Base
from tariff_engine.infrastructure.database.session import SessionLocal, configure_engine


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"

ADULT = 1
CHILD = 2
ANNUAL_TARIFF = 10

REFERENCE_DATE = date(2025, 9, 1)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    engine = configure_engine(TEST_DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def amounts() -> list[TariffTypeAmount]:
    """Annual membership: adult 360.00, child 240.00"""
    return [
        TariffTypeAmount(tariff_id=ANNUAL_TARIFF, fee_type_id=ADULT, base_amount=Decimal("360.00")),
        TariffTypeAmount(tariff_id=ANNUAL_TARIFF, fee_type_id=CHILD, base_amount=Decimal("240.00")),
    ]


@pytest.fixture
def bracket_table() -> IncomeBracketTable:
    """Three brackets [0,400) [400,800) [800,+inf), child override in the first one"""
    return IncomeBracketTable(
        id=1,
        code="CAF_2025",
        label="Bareme CAF 2025",
        is_default=True,
        brackets=(
            Bracket(
                id=11,
                label="QF 0-399",
                lower_bound=Decimal("0"),
                upper_bound=Decimal("400"),
                amount_rule=AmountRule.percentage(50),
                fee_type_overrides={CHILD: AmountRule.fixed("60.00")},
            ),
            Bracket(
                id=12,
                label="QF 400-799",
                lower_bound=Decimal("400"),
                upper_bound=Decimal("800"),
                amount_rule=AmountRule.percentage(75),
            ),
            Bracket(
                id=13,
                label="QF >= 800",
                lower_bound=Decimal("800"),
                upper_bound=None,
                amount_rule=AmountRule.percentage(100),
            ),
        ),
    )


@pytest.fixture
def sample_tree() -> DecisionTree:
    """Commune node (resident 10%, else nothing) and an age node with a nested loyalty check"""
    return DecisionTree(
        tariff_id=ANNUAL_TARIFF,
        nodes=[
            Node(
                id="n1",
                node_type="COMMUNE",
                label="Commune",
                order=1,
                branches=(
                    Branch(
                        id="b1",
                        code="RESIDENT",
                        label="Resident",
                        condition={"type": "communes", "ids": [74001, 74002]},
                        reduction=AmountRule.percentage(10),
                    ),
                    Branch(id="b2", code="OUTSIDE", label="Outside", condition={"type": "default"}),
                ),
            ),
            Node(
                id="n2",
                node_type="AGE",
                label="Age",
                order=2,
                branches=(
                    Branch(
                        id="b3",
                        code="SENIOR",
                        label="Senior",
                        condition={"operator": ">=", "value": 65},
                        reduction=AmountRule.fixed("20.00"),
                        children=(
                            Node(
                                id="n3",
                                node_type="LOYALTY",
                                label="Loyalty",
                                branches=(
                                    Branch(
                                        id="b4",
                                        code="LOYAL_SENIOR",
                                        label="Loyal senior",
                                        condition={"operator": ">=", "years": 10},
                                        reduction=AmountRule.fixed("5.00"),
                                    ),
                                ),
                            ),
                        ),
                    ),
                    Branch(
                        id="b5",
                        code="YOUNG",
                        label="Under 26",
                        condition={"operator": "<", "value": 26},
                        reduction=AmountRule.fixed("30.00"),
                    ),
                ),
            ),
        ],
    )


@pytest.fixture
def resident_senior() -> PersonProfile:
    return PersonProfile(
        id=1,
        residence_commune_id=74001,
        income_index=Decimal("350"),
        birth_date=date(1950, 3, 12),
        first_membership_date=date(2010, 1, 15),
        status_tags={"retired"},
    )


@pytest.fixture
def context() -> EvaluationContext:
    return EvaluationContext(reference_date=REFERENCE_DATE)


@pytest.fixture
def income_rule() -> ReductionRule:
    return ReductionRule(
        id=1,
        code="QF_LOW",
        label="Low income",
        source_type="income_bracket",
        amount_rule=AmountRule.percentage(20),
        conditions={"min": 0, "max": 600},
        application_order=10,
    )


@pytest.fixture
def commune_rule() -> ReductionRule:
    return ReductionRule(
        id=2,
        code="COMMUNE_SCIEZ",
        label="Reduction commune Sciez",
        source_type="commune",
        amount_rule=AmountRule.fixed("15.00"),
        conditions={"commune_ids": [74001]},
        application_order=20,
    )


@pytest.fixture
def configuration(amounts, income_rule, commune_rule) -> TariffConfiguration:
    """Base amounts and two matching-friendly rules, no tree, no bracket table"""
    return TariffConfiguration(amounts=amounts, rules=[income_rule, commune_rule])
