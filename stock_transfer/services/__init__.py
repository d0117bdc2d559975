"""
Services package initialization.

This module makes the services directory a Python package. Each subpackage
holds one component of the transfer workflow.
"""
