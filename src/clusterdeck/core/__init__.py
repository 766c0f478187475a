"""clusterdeck core: errors, logging, settings and health probes.

Layer 1 -- Type System & Errors
    errors.py      Structured error hierarchy (ClusterError and subclasses)

Layer 2 -- Ambient services
    logging.py     structlog configuration and context helpers
    settings.py    ClusterSettings (pydantic-settings, CLUSTERDECK_* env vars)
    health.py      /health, /health/ready, /health/live router factory
"""
