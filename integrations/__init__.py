"""Adapters for the backend REST service and the Doma ownership-token contract."""
