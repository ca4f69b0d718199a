"""Core types for the stockgate mediation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

ConfidenceTier = Literal["EXACT", "HIGH", "MEDIUM", "LOW", "MANUAL"]

ActionStatus = Literal["PROPOSED", "CONFIRMED", "EXECUTED", "FAILED", "CANCELLED"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"EXECUTED", "FAILED", "CANCELLED"})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "PROPOSED": frozenset({"CONFIRMED", "CANCELLED"}),
    "CONFIRMED": frozenset({"EXECUTED", "FAILED"}),
    "EXECUTED": frozenset(),
    "FAILED": frozenset(),
    "CANCELLED": frozenset(),
}

ActionKind = Literal["READ", "WRITE"]

DraftStatus = Literal["UPLOADED", "PROCESSING", "PROCESSED", "FAILED", "SUBMITTED"]

Role = Literal["FIELD", "WAREHOUSE", "ADMIN"]


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    name: str
    category: str
    unit: str
    sku: str | None = None
    branch_id: str | None = None


@dataclass(frozen=True)
class MatchQuery:
    name: str
    category: str | None = None
    unit: str | None = None


@dataclass(frozen=True)
class MatchCandidate:
    source_text: str
    catalog_item_id: str | None
    confidence_tier: ConfidenceTier
    reason: str


@dataclass(frozen=True)
class RequestContext:
    """Pre-validated caller identity handed over by the session layer."""

    user_id: str
    company_id: str
    role: str
    branch_id: str | None = None
    user_name: str | None = None


@dataclass(frozen=True)
class ProposedAction:
    id: str
    company_id: str
    user_id: str
    conversation_id: str | None
    action_type: str
    arguments_json: str
    status: ActionStatus
    created_at: datetime
    confirmed_at: datetime | None = None
    executed_at: datetime | None = None
    result_json: str | None = None
    error_message: str | None = None
    idempotency_key: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class AuditEntry:
    company_id: str
    user_id: str | None
    entity_type: str
    entity_id: str
    action: str
    changes: dict[str, Any]
    source: str = "ai"
    created_at: datetime | None = None


@dataclass
class ExecutionResult:
    success: bool
    data: Any = None
    error: str | None = None


@dataclass(frozen=True)
class ExtractedLine:
    name: str
    quantity: int
    unit: str | None = None
    category: str | None = None


@dataclass
class BomDraft:
    id: str
    company_id: str
    user_id: str
    name: str
    document_ref: str
    status: DraftStatus
    processing_error: str | None = None
    action_id: str | None = None
    created_at: datetime | None = None


@dataclass
class BomLineItem:
    id: str
    draft_id: str
    extracted_name: str
    extracted_qty: int
    extracted_unit: str | None
    extracted_category: str | None
    matched_item_id: str | None
    confidence_tier: ConfidenceTier
    match_reason: str
    manually_overridden: bool = False


@dataclass(frozen=True)
class LineUpdate:
    """A reviewer's correction to one extracted line."""

    item_id: str
    matched_item_id: str | None = None
    quantity: int | None = None


# Chat structures passed between the two model phases.

MessageRole = Literal["system", "user", "assistant", "tool"]

ToolStatus = Literal[
    "executed", "pending_confirmation", "rejected", "invalid", "unresolved", "error"
]


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments_json: str


@dataclass(frozen=True)
class ChatMessage:
    role: MessageRole
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class ModelTurn:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class ToolResult:
    call_id: str
    name: str
    status: ToolStatus
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatResponse:
    conversation_id: str
    reply: str
    proposed_actions: list[ProposedAction] = field(default_factory=list)
    executed_actions: list[ToolResult] = field(default_factory=list)
    declined: list[ToolResult] = field(default_factory=list)
    degraded: bool = False

    @property
    def requires_confirmation(self) -> bool:
        return len(self.proposed_actions) > 0
