"""
Database package initialization.

- base: declarative base, mixins and portable column types
- connection: async engine, sessions and health checks
- models: ORM models for users, orders, returns and webhook bookkeeping
"""

__all__ = []
