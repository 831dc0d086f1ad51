"""Prometheus metrics for the QA access core.

Cardinality rule: instance ids and user ids are NOT labels (unbounded).
Guard stage and deny code are labels (bounded enums).
"""

import logging
from typing import Optional

import prometheus_client

logger = logging.getLogger(__name__)

# --- Metric singletons (created on first access) ---

_metrics = {}


def _metric(name, metric_type, description, labelnames=()):
    """Get or create a Prometheus metric."""
    if name in _metrics:
        return _metrics[name]
    cls = getattr(prometheus_client, metric_type)
    m = cls(name, description, labelnames=labelnames)
    _metrics[name] = m
    return m


def authz_decisions_total():
    return _metric(
        "qa_access_authz_decisions_total",
        "Counter",
        "Access guard decisions",
        labelnames=["outcome", "code"],
    )


def audit_credits_consumed_total():
    return _metric(
        "qa_access_audit_credits_consumed_total",
        "Counter",
        "Audit credits consumed",
    )


def credit_denials_total():
    return _metric(
        "qa_access_credit_denials_total",
        "Counter",
        "Operations rejected for insufficient audit credit",
    )


def ledger_write_failures_total():
    return _metric(
        "qa_access_ledger_write_failures_total",
        "Counter",
        "Credit ledger writes that failed",
        labelnames=["counter"],
    )


# --- Helper functions for recording metrics ---

def record_authz_decision(outcome: str, code: Optional[str]):
    authz_decisions_total().labels(
        outcome=outcome,
        code=getattr(code, "value", code) or "none",
    ).inc()


def record_audit_credit_consumed():
    audit_credits_consumed_total().inc()


def record_credit_denial():
    credit_denials_total().inc()


def record_ledger_write_failure(counter: str):
    ledger_write_failures_total().labels(counter=counter).inc()


def generate_metrics_text() -> str:
    """Generate Prometheus metrics text output."""
    return prometheus_client.generate_latest().decode("utf-8")
