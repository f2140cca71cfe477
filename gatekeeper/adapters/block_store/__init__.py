"""Durable block store adapters.

MongoDB holds the authoritative block records; the in-memory store mirrors
its semantics for development and tests.
"""
