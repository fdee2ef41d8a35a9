"""Resale Intelligence.

Credit-gated item analysis and marketplace price research, live eBay market
statistics, and OAuth credential caching for eBay and StockX.
"""

__version__ = "0.1.0"
