"""
Tenant Gateway API service.
"""
