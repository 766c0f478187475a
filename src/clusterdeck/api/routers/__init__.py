"""Coordinator API routers."""
