"""
Core package for shared utilities.

Configuration, structured logging and the domain errors used across the
services and the HTTP layer.
"""
