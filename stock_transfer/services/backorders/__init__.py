"""
Backorder queue package initialization.

This module makes the backorder service directory a Python package.
"""
