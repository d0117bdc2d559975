"""
Cache package initialization.

Redis connection management and the pub/sub helpers used to broadcast
document change events.
"""
