"""Core payment relay logic: checkout factory, onboarding and reconciliation.

Submodules are imported directly (``slip_relay.core.checkout`` and so on) so
the integrations package can depend on ``core.exceptions`` and
``core.models`` without an import cycle.
"""
