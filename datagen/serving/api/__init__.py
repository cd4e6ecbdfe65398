"""
HTTP API: routes, dependencies and middleware.
"""
