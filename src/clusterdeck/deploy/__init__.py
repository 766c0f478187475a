"""Deployment side: shared volume, staging, the submission client and compose scaffolding."""
