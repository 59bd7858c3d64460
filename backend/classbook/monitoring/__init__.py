"""Metrics for the classbook ledger."""

from .prometheus_metrics import REGISTRY, PrometheusMetrics, prometheus_metrics

__all__ = ["REGISTRY", "PrometheusMetrics", "prometheus_metrics"]
