"""
Authentication for the BFF.

Design goals:
- One credential model per deployment (stateless token or server-side session).
- Services are built once at startup and passed in explicitly (no module singletons).
- Cookie-based credential (HttpOnly) for the browser; bearer/custom header for other clients.
"""
