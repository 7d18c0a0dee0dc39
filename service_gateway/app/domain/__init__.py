"""
Domain logic for the Gateway: request authentication and role checks.
"""
