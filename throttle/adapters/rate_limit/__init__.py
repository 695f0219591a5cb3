"""Limiter state store adapters.

The limiter talks to an abstract store so the in-memory implementation can
later be replaced by Redis or another shared backend without changing the
decision logic or the API layer.
"""
