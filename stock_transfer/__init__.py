"""
Stock transfer fulfillment core.

Coordinates internal stock-transfer orders between a requesting site, a
preparing site and a courier, keeps a self-healing audit of every stage,
reconciles what was requested against what arrived and queues shortfalls
for later orders.
"""

__version__ = "1.0.0"
