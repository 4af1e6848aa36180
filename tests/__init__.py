"""
knockrd test suite.

This package contains:
- unit/: Unit tests (fake AWS clients, mocked Consul transport)
- integration/: Reconciliation across every sink and the App wiring
"""
