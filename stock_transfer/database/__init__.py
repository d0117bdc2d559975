"""
Database package initialization.

The package follows a modular structure:
- base: SQLAlchemy declarative base and mixins
- models: ORM model of the JSON document table
- connection: Async engine and session factory management
- store: Document store abstraction with in-memory and SQL implementations
"""

# Import submodules explicitly when needed to avoid circular dependencies

__all__ = []
