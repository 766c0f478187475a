"""HTTP middleware and exception handlers for the coordinator API."""
