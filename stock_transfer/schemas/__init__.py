"""
Schemas package initialization.

Pydantic models for the persisted documents (orders, remit audits,
reconciliation documents, backorder queues) and the action payloads.
"""
