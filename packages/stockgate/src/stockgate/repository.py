"""Persistence contracts for ledger rows, conversations and catalog snapshots.

The in-memory implementations back the tests and the offline CLI.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol

from stockgate.types import (
    ALLOWED_TRANSITIONS,
    ActionStatus,
    AuditEntry,
    CatalogEntry,
    ChatMessage,
    ProposedAction,
)


def check_transition(expected: str, new_status: str) -> None:
    """Raise ValueError for an edge the state machine does not have."""
    if new_status not in ALLOWED_TRANSITIONS.get(expected, frozenset()):
        raise ValueError(f"No transition from {expected} to {new_status}")


class ActionRepository(Protocol):
    """Storage for proposed actions.

    ``compare_and_set`` is the only way to change a row's status. It must be
    atomic at the storage layer: the update applies only if the stored status
    still equals ``expected``. When ``audit`` is given it is written in the
    same transaction as the status change.
    """

    def insert(self, action: ProposedAction) -> ProposedAction: ...

    def get(self, action_id: str) -> ProposedAction | None: ...

    def compare_and_set(
        self,
        action_id: str,
        expected: ActionStatus,
        new_status: ActionStatus,
        fields: dict[str, Any] | None = None,
        audit: AuditEntry | None = None,
    ) -> ProposedAction | None: ...

    def list_for_user(
        self, company_id: str, user_id: str, status: ActionStatus | None = None
    ) -> list[ProposedAction]: ...

    def list_confirmed_before(self, cutoff: datetime) -> list[ProposedAction]: ...

    def audit_entries(
        self, company_id: str, entity_id: str | None = None
    ) -> list[AuditEntry]: ...


@dataclass
class InMemoryActionRepository:
    """Process-local repository.

    The lock plays the part of the database's row-level atomicity, so the
    ledger behaves the same against this store as against SQL.
    """

    actions: dict[str, ProposedAction] = field(default_factory=dict)
    audit_log: list[AuditEntry] = field(default_factory=list)
    transitions: list[tuple[str, str, str]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def insert(self, action: ProposedAction) -> ProposedAction:
        with self._lock:
            self.actions[action.id] = action
        return action

    def get(self, action_id: str) -> ProposedAction | None:
        with self._lock:
            return self.actions.get(action_id)

    def compare_and_set(
        self,
        action_id: str,
        expected: ActionStatus,
        new_status: ActionStatus,
        fields: dict[str, Any] | None = None,
        audit: AuditEntry | None = None,
    ) -> ProposedAction | None:
        check_transition(expected, new_status)
        with self._lock:
            current = self.actions.get(action_id)
            if current is None or current.status != expected:
                return None
            updated = replace(current, status=new_status, **(fields or {}))
            self.actions[action_id] = updated
            self.transitions.append((action_id, expected, new_status))
            if audit is not None:
                self.audit_log.append(audit)
            return updated

    def list_for_user(
        self, company_id: str, user_id: str, status: ActionStatus | None = None
    ) -> list[ProposedAction]:
        with self._lock:
            rows = [
                a for a in self.actions.values()
                if a.company_id == company_id
                and a.user_id == user_id
                and (status is None or a.status == status)
            ]
        return sorted(rows, key=lambda a: a.created_at, reverse=True)

    def list_confirmed_before(self, cutoff: datetime) -> list[ProposedAction]:
        with self._lock:
            return [
                a for a in self.actions.values()
                if a.status == "CONFIRMED" and a.confirmed_at is not None and a.confirmed_at < cutoff
            ]

    def audit_entries(
        self, company_id: str, entity_id: str | None = None
    ) -> list[AuditEntry]:
        with self._lock:
            return [
                e for e in self.audit_log
                if e.company_id == company_id and (entity_id is None or e.entity_id == entity_id)
            ]


class ConversationStore(Protocol):
    def get_or_create(
        self,
        company_id: str,
        user_id: str,
        conversation_id: str | None = None,
        branch_id: str | None = None,
        topic: str | None = None,
    ) -> str: ...

    def is_owned_by(self, conversation_id: str, company_id: str, user_id: str) -> bool: ...

    def append(self, conversation_id: str, message: ChatMessage) -> None: ...

    def recent(self, conversation_id: str, limit: int) -> list[ChatMessage]: ...


class CatalogReader(Protocol):
    def list_entries(self, company_id: str, branch_id: str | None = None) -> list[CatalogEntry]: ...


@dataclass
class InMemoryConversationStore:
    owners: dict[str, tuple[str, str]] = field(default_factory=dict)
    messages: dict[str, list[ChatMessage]] = field(default_factory=dict)

    def get_or_create(
        self,
        company_id: str,
        user_id: str,
        conversation_id: str | None = None,
        branch_id: str | None = None,
        topic: str | None = None,
    ) -> str:
        if conversation_id and self.is_owned_by(conversation_id, company_id, user_id):
            return conversation_id
        new_id = str(uuid.uuid4())
        self.owners[new_id] = (company_id, user_id)
        self.messages[new_id] = []
        return new_id

    def is_owned_by(self, conversation_id: str, company_id: str, user_id: str) -> bool:
        return self.owners.get(conversation_id) == (company_id, user_id)

    def append(self, conversation_id: str, message: ChatMessage) -> None:
        self.messages[conversation_id].append(message)

    def recent(self, conversation_id: str, limit: int) -> list[ChatMessage]:
        return list(self.messages.get(conversation_id, [])[-limit:])


@dataclass
class InMemoryCatalog:
    """Catalog entries keyed by company id."""

    entries: dict[str, list[CatalogEntry]] = field(default_factory=dict)

    def list_entries(self, company_id: str, branch_id: str | None = None) -> list[CatalogEntry]:
        return [
            e for e in self.entries.get(company_id, [])
            if branch_id is None or e.branch_id == branch_id
        ]
