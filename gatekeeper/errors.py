"""
Error taxonomy for the gatekeeper service.

Only cryptographic and on-chain failures travel up to the HTTP layer as
exceptions. Fact-provider and parsing failures are absorbed close to where
they happen and surface as data.
"""

from __future__ import annotations

from typing import List, Optional


class GatekeeperError(Exception):
    """Base class for every error raised by this package."""


class ToolError(GatekeeperError):
    """A fact provider's upstream call failed. Converted to {"error": ...} at the provider boundary."""


class ParseError(GatekeeperError):
    """Model output was not in the expected shape. Never leaves the response parser."""


class SignatureError(GatekeeperError):
    """The biometric assertion could not be turned into a 64-byte r||s signature."""


class ChainError(GatekeeperError):
    """JSON-RPC failure or contract revert."""

    def __init__(self, message: str, *, revert_reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.revert_reason = revert_reason


class ProofError(GatekeeperError):
    """Proof token unknown, expired or already consumed."""


class ConfigurationError(GatekeeperError):
    """A required setting (relayer key, contract address, API key) is missing."""


class ModelExhaustionError(GatekeeperError):
    """Every (api key, model) combination failed."""

    def __init__(self, diagnostics: Optional[List[str]] = None) -> None:
        self.diagnostics = list(diagnostics or [])
        super().__init__("all models exhausted")
