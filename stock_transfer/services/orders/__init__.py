"""
Order services package initialization.

This module makes the order service directory a Python package. Import the
state machine, repository and service modules explicitly.
"""
