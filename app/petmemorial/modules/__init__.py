"""
Feature modules live under this package.

Each module owns its routes/templates/service code and reuses the platform
primitives (auth, RBAC, audit, document store, storage, DB session).
"""
