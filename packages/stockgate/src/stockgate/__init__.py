"""stockgate - Confirmation-gated inventory mutations from chat and BOM documents."""

from stockgate.confirmation import ConfirmationResult, ConfirmationService
from stockgate.ledger import ActionLedger, LedgerError, LedgerOutcome
from stockgate.matcher import match_item
from stockgate.orchestrator import ConversationOrchestrator
from stockgate.resolver import CandidateResolver, resolve_many
from stockgate.types import CatalogEntry, MatchCandidate, MatchQuery, ProposedAction, RequestContext

__all__ = [
    "ActionLedger",
    "CandidateResolver",
    "CatalogEntry",
    "ConfirmationResult",
    "ConfirmationService",
    "ConversationOrchestrator",
    "LedgerError",
    "LedgerOutcome",
    "MatchCandidate",
    "MatchQuery",
    "ProposedAction",
    "RequestContext",
    "match_item",
    "resolve_many",
]
