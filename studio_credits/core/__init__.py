"""
Core modules for Studio Credits.

This package contains the session store, credit ledger, job tracker,
payment reconciler and the client facade that wires them together.
"""
