"""HTTP surface of the Cluster Coordinator (FastAPI)."""

from clusterdeck.api.app import create_app

__all__ = ["create_app"]
