"""Shared Prometheus registry; every module registers its own collectors here so
/metrics exposes them without touching the process-global default registry."""
from prometheus_client import CollectorRegistry

registry = CollectorRegistry()
