"""
API Routes Package
==================
Shared route utilities for api.py.

Modules:
  helpers  - JSON coercion, request parsing, payload builders
"""
