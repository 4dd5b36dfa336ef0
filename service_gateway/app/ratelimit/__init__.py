"""
Rate limiting package for the Gateway.

Holds the tier table and the fixed-window quota algorithm that enforces
per-API-key monthly and per-minute request budgets.
"""
