"""Remit audit projection package."""
