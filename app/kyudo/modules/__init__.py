"""
Feature modules live under this package.

Each module owns its models, service rules and JSON blueprint, while reusing
platform primitives (auth context, RBAC, audit, DB session).
"""
