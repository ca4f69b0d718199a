"""Error taxonomy for stockgate."""

from __future__ import annotations


class StockgateError(Exception):
    """Base class for all stockgate errors."""


class AuthorizationError(StockgateError):
    """The caller's role lacks the capability for an operation."""


class ValidationError(StockgateError):
    """Malformed or semantically invalid input."""


class MalformedPayloadError(ValidationError):
    """A payload that is not even syntactically valid (e.g. broken JSON)."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class NotFoundError(StockgateError):
    """A record is absent or outside the requester's scope."""


class AmbiguousCatalogError(StockgateError):
    """More than one catalog entry shares a name that must be unique."""

    def __init__(self, name: str, entry_ids: list[str]) -> None:
        super().__init__(
            f"Catalog has {len(entry_ids)} entries named {name!r}: {', '.join(entry_ids)}"
        )
        self.name = name
        self.entry_ids = entry_ids


class InvalidTransition(StockgateError):
    """A ledger state change that is not allowed from the current status."""


class ExecutionError(StockgateError):
    """A real mutation could not be carried out."""


class UpstreamModelError(StockgateError):
    """The language model call failed, timed out or answered garbage."""
