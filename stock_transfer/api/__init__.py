"""
API package initialization.

HTTP surface of the stock transfer core.
"""
