"""
DocODM Test Suite.

This package contains:
- unit/: Unit tests (no storage)
- integration/: Integration tests (Odm over the in-memory driver)
"""
