"""Reconciliation document package."""
