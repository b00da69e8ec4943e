"""Rule evaluation."""

from apiwatch.rules.evaluator import METRIC_SELECTORS, aggregate, compare, evaluate, select_metric

__all__ = ["METRIC_SELECTORS", "aggregate", "compare", "evaluate", "select_metric"]
