"""
immustreams Test Suite.

This package contains:
- unit/: Unit tests (in-memory store, no server)
- integration/: Full channel lifecycle against the in-memory store
- e2e/: Live immudb server (IMMUSTREAMS_E2E_TESTS=1)
"""
