"""Versioned, lockable tariff decision tree"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from tariff_engine.domain.conditions import explain_branch, normalize_condition
from tariff_engine.domain.exceptions import ConfigurationError, LockViolation
from tariff_engine.domain.models import (
    AmountRule,
    Bounds,
    BranchCheck,
    DisplayMode,
    EvaluationContext,
    NodeTrace,
    PersonProfile,
    ReductionApplicationRecord,
    SourceType,
)
from tariff_engine.utils.money import ZERO, floor_at_zero, to_decimal

logger = logging.getLogger(__name__)


def _freeze(condition: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType({k: tuple(v) if isinstance(v, list) else v for k, v in dict(condition or {}).items()})


def _thaw(condition: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: list(v) if isinstance(v, tuple) else v for k, v in condition.items()}


@dataclass(frozen=True)
class Branch:
    """One outcome of a node: optional reduction plus refining sub-nodes"""

    id: str
    code: str
    label: str
    condition: Mapping[str, Any] = field(default_factory=dict)
    reduction: Optional[AmountRule] = None
    children: Tuple["Node", ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "condition", _freeze(self.condition))
        object.__setattr__(self, "children", tuple(self.children))

    def max_reduction(self, base_amount: Decimal) -> Decimal:
        total = self.reduction.apply(base_amount) if self.reduction else ZERO
        for child in self.children:
            total += child.max_reduction(base_amount)
        return total


@dataclass(frozen=True)
class Node:
    """A question asked about the person, answered by the first matching branch"""

    id: str
    node_type: str
    label: str = ""
    order: int = 0
    branches: Tuple[Branch, ...] = ()

    def __post_init__(self):
        branches = []
        for branch in self.branches:
            try:
                condition = normalize_condition(self.node_type, branch.condition)
            except ConfigurationError as e:
                raise ConfigurationError(f"Node {self.id}, branch {branch.code}: {e}") from e
            branches.append(replace(branch, condition=condition))
        object.__setattr__(self, "branches", tuple(branches))

    def max_reduction(self, base_amount: Decimal) -> Decimal:
        """Steepest branch of this node, sub-conditions included"""
        return max((b.max_reduction(base_amount) for b in self.branches), default=ZERO)

    def check_branches(
        self, profile: PersonProfile, context: EvaluationContext
    ) -> Tuple[Optional[Branch], Tuple[BranchCheck, ...]]:
        """Test branches in order until one matches; default branches always do"""
        checks = []
        for branch in self.branches:
            matched, details = explain_branch(self.node_type, branch.condition, profile, context)
            checks.append(BranchCheck(branch_id=branch.id, branch_code=branch.code, matched=matched, details=details))
            if matched:
                return branch, tuple(checks)
        return None, tuple(checks)

    def select_branch(self, profile: PersonProfile, context: EvaluationContext) -> Optional[Branch]:
        return self.check_branches(profile, context)[0]


@dataclass(frozen=True)
class TreeMatch:
    node: Node
    branch: Branch
    depth: int


@dataclass
class TreeEvaluation:
    """Result of one pass over the tree for one person"""

    records: List[ReductionApplicationRecord] = field(default_factory=list)
    matches: List[TreeMatch] = field(default_factory=list)
    trace: List[NodeTrace] = field(default_factory=list)

    @property
    def path(self) -> List[str]:
        return [m.branch.code for m in self.matches]


def _ordered(nodes: Iterable[Node]) -> List[Node]:
    return sorted(nodes, key=lambda n: n.order)


class _TreeWalk:
    """Preorder pass collecting ledger entries, the matched path and the trace"""

    def __init__(self, tree: "DecisionTree", profile: PersonProfile, context: EvaluationContext,
                 base_amount: Decimal, start_order: int):
        self.tree = tree
        self.profile = profile
        self.context = context
        self.base_amount = base_amount
        self.running = base_amount
        self.start_order = start_order
        self.snapshot = context.snapshot(profile)
        self.result = TreeEvaluation()

    def run(self, nodes: Iterable[Node]) -> TreeEvaluation:
        self.result.trace = list(self._visit(nodes, 0))
        return self.result

    def _visit(self, nodes: Iterable[Node], depth: int) -> Tuple[NodeTrace, ...]:
        traces = []
        for node in _ordered(nodes):
            branch, checks = node.check_branches(self.profile, self.context)
            if branch is None:
                traces.append(NodeTrace(node_id=node.id, node_type=node.node_type, depth=depth, checks=checks))
                continue

            self.result.matches.append(TreeMatch(node=node, branch=branch, depth=depth))
            applied = self._apply(node, branch) if branch.reduction is not None else None
            traces.append(
                NodeTrace(
                    node_id=node.id,
                    node_type=node.node_type,
                    depth=depth,
                    checks=checks,
                    selected_branch_code=branch.code,
                    reduction_amount=applied,
                    children=self._visit(branch.children, depth + 1),
                )
            )
        return tuple(traces)

    def _apply(self, node: Node, branch: Branch) -> Decimal:
        applied = min(branch.reduction.apply(self.base_amount), self.running)
        self.running = floor_at_zero(self.running - applied)
        records = self.result.records
        records.append(
            ReductionApplicationRecord(
                source_type=SourceType.DECISION_TREE,
                label=branch.label or branch.code,
                amount_rule=branch.reduction,
                applied_order=self.start_order + len(records),
                base_amount_at_application=self.base_amount,
                resulting_reduction_amount=applied,
                context_snapshot={
                    **self.snapshot,
                    "tree_id": self.tree.id,
                    "tree_version": self.tree.tree_version,
                    "node_id": node.id,
                    "node_type": node.node_type,
                },
                branch_code=branch.code,
            )
        )
        return applied


class DecisionTree:
    """
    Decision tree attached to one tariff.

    Content is editable until the first real fee is priced with it; from then
    on the tree is locked for good and changes go through duplicate().
    """

    def __init__(
        self,
        tariff_id: int,
        nodes: Iterable[Node] = (),
        tree_version: int = 1,
        display_mode: DisplayMode = DisplayMode.MINIMUM,
        locked: bool = False,
        locked_at: Optional[datetime] = None,
        id: Optional[int] = None,
    ):
        self.id = id
        self.tariff_id = tariff_id
        self.tree_version = tree_version
        self._nodes: Tuple[Node, ...] = tuple(nodes)
        self._display_mode = DisplayMode(display_mode)
        self._locked = locked
        self._locked_at = locked_at
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"DecisionTree(id={self.id}, tariff_id={self.tariff_id}, "
            f"version={self.tree_version}, locked={self._locked})"
        )

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return self._nodes

    @property
    def display_mode(self) -> DisplayMode:
        return self._display_mode

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def locked_at(self) -> Optional[datetime]:
        return self._locked_at

    # -- lifecycle -----------------------------------------------------------

    def lock(self, now: Optional[datetime] = None) -> bool:
        """
        Lock the tree at its first real use.

        Idempotent: only the call performing the unlocked -> locked
        transition returns True, later calls keep the original locked_at.
        """
        with self._lock:
            if self._locked:
                return False
            self._locked = True
            self._locked_at = now or datetime.now(timezone.utc)
        logger.info(
            "Decision tree locked",
            extra={"tree_id": self.id, "tariff_id": self.tariff_id, "version": self.tree_version},
        )
        return True

    def duplicate(self) -> "DecisionTree":
        """New unlocked draft at version + 1; the source is left untouched"""
        with self._lock:
            document = self.to_dict()
        return DecisionTree(
            tariff_id=self.tariff_id,
            nodes=[_node_from_dict(n) for n in document["nodes"]],
            tree_version=document["version"] + 1,
            display_mode=self._display_mode,
        )

    def _ensure_editable(self) -> None:
        if self._locked:
            raise LockViolation(
                f"Decision tree {self.id} (tariff {self.tariff_id}, version {self.tree_version}) "
                f"is locked since {self._locked_at}; duplicate it to make changes"
            )

    def add_node(self, node: Node) -> None:
        with self._lock:
            self._ensure_editable()
            self._nodes = self._nodes + (node,)

    def replace_nodes(self, nodes: Iterable[Node]) -> None:
        with self._lock:
            self._ensure_editable()
            self._nodes = tuple(nodes)

    def set_display_mode(self, display_mode: DisplayMode) -> None:
        with self._lock:
            self._ensure_editable()
            self._display_mode = DisplayMode(display_mode)

    # -- computation ---------------------------------------------------------

    def compute_bounds(self, base_amount: Decimal) -> Bounds:
        """
        Price range this tree can produce, without any person.

        Each node contributes its steepest branch and all node maxima stack,
        so min is a conservative lower bound.
        """
        base_amount = to_decimal(base_amount)
        total_max_reduction = sum((n.max_reduction(base_amount) for n in self._nodes), ZERO)
        return Bounds(
            min=floor_at_zero(base_amount - total_max_reduction),
            max=base_amount,
            display_mode=self._display_mode,
        )

    def explain(
        self,
        profile: PersonProfile,
        context: EvaluationContext,
        base_amount: Decimal,
        start_order: int = 1,
    ) -> TreeEvaluation:
        """
        Evaluate the tree for one person in a single pass.

        Percentages are taken on base_amount (the amount entering the tree);
        each entry is capped so the running amount never goes below zero.
        The trace lists every branch tested per node, for the preview screen.
        """
        return _TreeWalk(self, profile, context, to_decimal(base_amount), start_order).run(self._nodes)

    def evaluate(
        self,
        profile: PersonProfile,
        context: EvaluationContext,
        base_amount: Decimal,
        start_order: int = 1,
    ) -> List[ReductionApplicationRecord]:
        """Ledger entries for the branches matched by this person"""
        return self.explain(profile, context, base_amount, start_order).records

    def match_path(self, profile: PersonProfile, context: EvaluationContext) -> List[TreeMatch]:
        """Matched (node, branch) pairs in evaluation order"""
        return self.explain(profile, context, ZERO).matches

    # -- JSON mapping --------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.tree_version, "nodes": [_node_to_dict(n) for n in self._nodes]}

    @classmethod
    def from_dict(
        cls,
        tariff_id: int,
        document: Mapping[str, Any],
        display_mode: DisplayMode = DisplayMode.MINIMUM,
        locked: bool = False,
        locked_at: Optional[datetime] = None,
        id: Optional[int] = None,
        tree_version: Optional[int] = None,
    ) -> "DecisionTree":
        try:
            nodes = [_node_from_dict(n) for n in document.get("nodes", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Malformed decision tree for tariff {tariff_id}: {e}") from e
        return cls(
            tariff_id=tariff_id,
            nodes=nodes,
            tree_version=tree_version or document.get("version", 1),
            display_mode=display_mode,
            locked=locked,
            locked_at=locked_at,
            id=id,
        )


def _node_to_dict(node: Node) -> Dict[str, Any]:
    return {
        "id": node.id,
        "type": node.node_type,
        "label": node.label,
        "order": node.order,
        "branches": [
            {
                "id": b.id,
                "code": b.code,
                "label": b.label,
                "condition": _thaw(b.condition),
                "reduction": b.reduction.to_dict() if b.reduction else None,
                "children": [_node_to_dict(c) for c in b.children],
            }
            for b in node.branches
        ],
    }


def _node_from_dict(data: Mapping[str, Any]) -> Node:
    branches = tuple(
        Branch(
            id=str(b["id"]),
            code=b.get("code", str(b["id"])),
            label=b.get("label", ""),
            condition=b.get("condition") or {},
            reduction=AmountRule.from_dict(b["reduction"]) if b.get("reduction") else None,
            children=tuple(_node_from_dict(c) for c in b.get("children", [])),
        )
        for b in data.get("branches", [])
    )
    return Node(
        id=str(data["id"]),
        node_type=data["type"],
        label=data.get("label", ""),
        order=data.get("order", 0),
        branches=branches,
    )
