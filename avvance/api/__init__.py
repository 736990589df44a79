"""API layer module.

Contains FastAPI routers, request/response schemas and HTTP-level
security helpers. Routers are imported by ``avvance.main``.
"""
