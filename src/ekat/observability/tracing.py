"""MLflow run tracking for harvest runs.

Each CLI pipeline run can be recorded as an MLflow run: the parameters
that shaped it (municipality, alphabet size, sample quota) and the
counters it produced (queries resolved, splits, failures, captchas).
Tracking is off unless ``settings.mlflow_enabled`` is set; the helpers
below are no-ops outside an active run.

Usage:

    from ekat.observability.tracing import init_tracking, start_run, log_metrics

    init_tracking()
    with start_run(run_name="streets-80438"):
        log_params({"municipality": 80438})
        log_metrics({"queries_resolved": 812})
"""

import logging
from contextlib import contextmanager

import mlflow
from mlflow.exceptions import MlflowException

from ekat.config import settings

logger = logging.getLogger(__name__)


def init_tracking() -> None:
    """Point MLflow at the configured tracking store and experiment."""
    if not settings.mlflow_enabled:
        return
    mlflow.set_tracking_uri(settings.mlflow_tracking_uri)
    mlflow.set_experiment(settings.mlflow_experiment_name)


@contextmanager
def start_run(**kwargs):
    """Context manager: MLflow run if tracking is enabled, otherwise no-op."""
    if settings.mlflow_enabled:
        with mlflow.start_run(**kwargs) as run:
            yield run
    else:
        yield None


def _active() -> bool:
    return settings.mlflow_enabled and mlflow.active_run() is not None


def log_params(params: dict) -> None:
    if _active():
        try:
            mlflow.log_params(params)
        except MlflowException as e:
            logger.warning("Failed to log params to MLflow: %s", e)


def log_metrics(metrics: dict, step: int | None = None) -> None:
    if _active():
        try:
            mlflow.log_metrics(metrics, step=step)
        except MlflowException as e:
            logger.warning("Failed to log metrics to MLflow: %s", e)


def set_tag(key: str, value: str) -> None:
    if _active():
        try:
            mlflow.set_tag(key, value)
        except MlflowException as e:
            logger.warning("Failed to set MLflow tag %s: %s", key, e)
