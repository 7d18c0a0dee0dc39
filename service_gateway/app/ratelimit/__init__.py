"""
Rate limiting package for the Gateway.

Holds the fixed-window limiter and the middleware helper that maps
requests onto per-identity request budgets.
"""
