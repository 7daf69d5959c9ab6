"""
Feature modules live under this package.

Each module owns its models, input schemas, service layer and routes, and
reuses the platform primitives (auth, RBAC, audit, DB session).
"""
