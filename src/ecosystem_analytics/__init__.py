"""Top-level package for ecosystem_analytics.

Subpackages: ``client`` (emitter embedded in product CLIs), ``ingestion`` and
``aggregators`` (write path), ``reporting`` (read path), ``api`` (FastAPI app) and
``tasks`` (Celery maintenance jobs).
"""

__version__ = "0.1.0"

__all__ = ["config", "exceptions", "models", "aggregators", "ingestion", "reporting"]
