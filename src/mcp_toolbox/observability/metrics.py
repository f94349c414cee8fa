"""Prometheus metrics for MCP Toolbox.

Cardinality rule: instance names and account ids are NOT labels (unbounded).
Status and transport values are labels (bounded).
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Lazy-load prometheus_client to allow graceful degradation
_prom = None


def _get_prom():
    """Lazily import prometheus_client."""
    global _prom
    if _prom is None:
        try:
            import prometheus_client
            _prom = prometheus_client
        except ImportError:
            logger.warning("prometheus_client not installed; metrics disabled")
            _prom = False
    return _prom if _prom else None


# --- Metric singletons (created on first access) ---

_metrics = {}


def _metric(name, metric_type, description, labelnames=()):
    """Get or create a Prometheus metric."""
    if name in _metrics:
        return _metrics[name]
    prom = _get_prom()
    if prom is None:
        _metrics[name] = None
        return None
    cls = getattr(prom, metric_type)
    m = cls(name, description, labelnames=labelnames)
    _metrics[name] = m
    return m


def deployments_total():
    return _metric(
        "mcp_toolbox_deployments_total",
        "Counter",
        "Instance deployments by outcome",
        labelnames=["transport", "status"],
    )


def deployment_duration():
    return _metric(
        "mcp_toolbox_deployment_duration_seconds",
        "Histogram",
        "Single-instance deployment duration in seconds",
        labelnames=["status"],
    )


def restarts_total():
    return _metric(
        "mcp_toolbox_restarts_total",
        "Counter",
        "Instance restarts by outcome (success, failed, rejected)",
        labelnames=["outcome"],
    )


def health_checks_total():
    return _metric(
        "mcp_toolbox_health_checks_total",
        "Counter",
        "Health checks by resulting status",
        labelnames=["transport", "status"],
    )


def credential_injections_total():
    return _metric(
        "mcp_toolbox_credential_injections_total",
        "Counter",
        "Credential injection attempts by outcome",
        labelnames=["status"],
    )


def managed_instances():
    return _metric(
        "mcp_toolbox_managed_instances",
        "Gauge",
        "Number of instances currently tracked by the orchestrator",
    )


def cached_credential_accounts():
    return _metric(
        "mcp_toolbox_cached_credential_accounts",
        "Gauge",
        "Number of accounts with credentials in the in-memory cache",
    )


# --- Helper functions for recording metrics ---

def record_deployment(transport: str, status: str, duration: float):
    m = deployments_total()
    if m:
        m.labels(transport=transport, status=status).inc()
    d = deployment_duration()
    if d:
        d.labels(status=status).observe(duration)


def record_restart(outcome: str):
    m = restarts_total()
    if m:
        m.labels(outcome=outcome).inc()


def record_health_check(transport: str, status: str):
    m = health_checks_total()
    if m:
        m.labels(transport=transport, status=status).inc()


def record_credential_injection(success: bool):
    m = credential_injections_total()
    if m:
        m.labels(status="success" if success else "failure").inc()


def set_managed_instances(count: int):
    m = managed_instances()
    if m:
        m.set(count)


def set_cached_credential_accounts(count: int):
    m = cached_credential_accounts()
    if m:
        m.set(count)


def generate_metrics_text() -> Optional[str]:
    """Generate Prometheus metrics text output."""
    prom = _get_prom()
    if prom is None:
        return None
    return prom.generate_latest().decode("utf-8")
