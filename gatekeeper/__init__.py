"""Gatekeeper: natural-language eligibility checks and relayed claims for reward drops."""

__version__ = "1.0.0"
