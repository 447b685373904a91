"""
ydocstore Test Suite.

This package contains:
- unit/: Unit tests (codec, config, store, document adapters)
- integration/: Integration tests (service and CLI over SQLite)
"""
