"""Prometheus metrics for fee computations, skipped rules and tree locking"""

from prometheus_client import Counter, Histogram

from tariff_engine.domain.models import FeeComputation

fee_computation_counter = Counter(
    "tariff_fee_computation_total",
    "Fee computations performed",
    ["mode"],  # preview | commit
)

bounds_computation_counter = Counter(
    "tariff_bounds_computation_total",
    "Tariff bound estimations performed",
)

skipped_rule_counter = Counter(
    "tariff_rule_skipped_total",
    "Reduction rules skipped because of malformed or unresolvable conditions",
    ["source_type"],
)

tree_lock_counter = Counter(
    "tariff_tree_lock_total",
    "Decision tree lock attempts at first real use",
    ["outcome"],  # locked | already_locked
)

reduction_amount_histogram = Histogram(
    "tariff_reduction_amount_euros",
    "Total reduction granted per committed fee",
    buckets=[0, 5, 10, 25, 50, 100, 200, 400],
)


def record_computation(mode: str, computation: FeeComputation) -> None:
    """Record computation metrics, skipped rules included"""
    fee_computation_counter.labels(mode=mode).inc()
    for warning in computation.warnings:
        skipped_rule_counter.labels(source_type=warning.source_type.value).inc()
    if mode == "commit":
        reduction_amount_histogram.observe(float(computation.total_reduction))


def record_tree_lock(transitioned: bool) -> None:
    tree_lock_counter.labels(outcome="locked" if transitioned else "already_locked").inc()
