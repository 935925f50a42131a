"""Observability: structured logging and MLflow run tracking helpers."""

from ekat.observability.logging import get_run_id, setup_logging
from ekat.observability.tracing import init_tracking, log_metrics, log_params, start_run

__all__ = ["get_run_id", "init_tracking", "log_metrics", "log_params", "setup_logging", "start_run"]
