"""Audit sink adapters for admission decisions."""
