"""
API v1 package initialization.

This module collects the v1 routers of the stock transfer API.
"""

from stock_transfer.api.v1.backorders import router as backorders_router
from stock_transfer.api.v1.orders import router as orders_router
from stock_transfer.api.v1.reconciliation import router as reconciliation_router

__all__ = ["backorders_router", "orders_router", "reconciliation_router"]
