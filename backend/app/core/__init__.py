"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    errors      — exception hierarchy & handlers
    middleware  — request IDs & access logging
    health      — health check aggregation
    database    — async SQLAlchemy engine & sessions
"""
