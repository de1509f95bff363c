"""SQLAlchemy ORM models for decision trees and the reduction ledger"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class DecisionTreeRow(Base):
    """Decision tree of a tariff, one row per version"""

    __tablename__ = "decision_tree"
    __table_args__ = (UniqueConstraint("tariff_id", "tree_version", name="uq_decision_tree_version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tariff_id = Column(Integer, nullable=False, index=True)
    tree_version = Column(Integer, nullable=False, default=1)
    display_mode = Column(String(16), nullable=False, default="minimum")
    tree_json = Column(JSON, nullable=False)
    locked = Column(Boolean, nullable=False, default=False)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    structure_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())


class FeeReductionRow(Base):
    """Ledger row: one reduction applied to one fee, written once"""

    __tablename__ = "fee_reduction"

    id = Column(Integer, primary_key=True, autoincrement=True)
    fee_id = Column(Integer, nullable=False, index=True)
    decision_tree_id = Column(Integer, ForeignKey("decision_tree.id"), nullable=True)
    rule_id = Column(Integer, nullable=True)
    rule_code = Column(String(50), nullable=True)
    branch_code = Column(String(50), nullable=True)
    source_type = Column(String(32), nullable=False)
    label = Column(String(100), nullable=False)
    calculation_type = Column(String(16), nullable=False)
    value = Column(Numeric(10, 4), nullable=False)  # percentages may carry more than two decimals
    applied_order = Column(Integer, nullable=False)
    base_amount = Column(Numeric(10, 2), nullable=False)
    reduction_amount = Column(Numeric(10, 2), nullable=False)
    context_json = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    decision_tree = relationship("DecisionTreeRow")
