"""SQLAlchemy-backed stores for ledger rows, catalog, conversations and BOM drafts."""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from stockgate.db import (
    AiActionRow,
    AuditLogRow,
    BomDraftRow,
    BomItemRow,
    CatalogItemRow,
    ConversationRow,
    MessageRow,
)
from stockgate.errors import NotFoundError
from stockgate.repository import check_transition
from stockgate.types import (
    ActionStatus,
    AuditEntry,
    BomDraft,
    BomLineItem,
    CatalogEntry,
    ChatMessage,
    LineUpdate,
    ProposedAction,
    ToolCall,
)

log = structlog.get_logger()


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back; stored values are always UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_action(row: AiActionRow) -> ProposedAction:
    return ProposedAction(
        id=row.id,
        company_id=row.company_id,
        user_id=row.user_id,
        conversation_id=row.conversation_id,
        action_type=row.action_type,
        arguments_json=row.arguments_json,
        status=row.status,  # type: ignore[arg-type]
        created_at=_aware(row.created_at),
        confirmed_at=_aware(row.confirmed_at),
        executed_at=_aware(row.executed_at),
        result_json=row.result_json,
        error_message=row.error_message,
        idempotency_key=row.idempotency_key,
    )


def _to_audit_row(entry: AuditEntry) -> AuditLogRow:
    row = AuditLogRow(
        company_id=entry.company_id,
        user_id=entry.user_id,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        action=entry.action,
        changes=json.dumps(entry.changes, default=str),
        source=entry.source,
    )
    if entry.created_at is not None:
        row.created_at = entry.created_at
    return row


class SqlActionRepository:
    """Ledger rows in the ``ai_actions`` table.

    Status changes are a single conditional UPDATE; the database decides
    which of several concurrent callers wins.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def insert(self, action: ProposedAction) -> ProposedAction:
        with self.session_factory() as session:
            session.add(AiActionRow(
                id=action.id,
                company_id=action.company_id,
                user_id=action.user_id,
                conversation_id=action.conversation_id,
                action_type=action.action_type,
                arguments_json=action.arguments_json,
                status=action.status,
                created_at=action.created_at,
                confirmed_at=action.confirmed_at,
                executed_at=action.executed_at,
                result_json=action.result_json,
                error_message=action.error_message,
                idempotency_key=action.idempotency_key,
            ))
            session.commit()
        return action

    def get(self, action_id: str) -> ProposedAction | None:
        with self.session_factory() as session:
            row = session.get(AiActionRow, action_id)
            return _to_action(row) if row is not None else None

    def compare_and_set(
        self,
        action_id: str,
        expected: ActionStatus,
        new_status: ActionStatus,
        fields: dict[str, Any] | None = None,
        audit: AuditEntry | None = None,
    ) -> ProposedAction | None:
        check_transition(expected, new_status)
        values = {"status": new_status, **(fields or {})}
        with self.session_factory() as session:
            result = session.execute(
                update(AiActionRow)
                .where(AiActionRow.id == action_id, AiActionRow.status == expected)
                .values(**values)
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            if audit is not None:
                session.add(_to_audit_row(audit))
            session.commit()
            row = session.get(AiActionRow, action_id)
            return _to_action(row)

    def list_for_user(
        self, company_id: str, user_id: str, status: ActionStatus | None = None
    ) -> list[ProposedAction]:
        stmt = select(AiActionRow).where(
            AiActionRow.company_id == company_id, AiActionRow.user_id == user_id
        )
        if status is not None:
            stmt = stmt.where(AiActionRow.status == status)
        stmt = stmt.order_by(AiActionRow.created_at.desc())
        with self.session_factory() as session:
            return [_to_action(r) for r in session.scalars(stmt)]

    def list_confirmed_before(self, cutoff: datetime) -> list[ProposedAction]:
        stmt = (
            select(AiActionRow)
            .where(AiActionRow.status == "CONFIRMED", AiActionRow.confirmed_at < cutoff)
            .order_by(AiActionRow.confirmed_at)
        )
        with self.session_factory() as session:
            return [_to_action(r) for r in session.scalars(stmt)]

    def audit_entries(
        self, company_id: str, entity_id: str | None = None
    ) -> list[AuditEntry]:
        stmt = select(AuditLogRow).where(AuditLogRow.company_id == company_id)
        if entity_id is not None:
            stmt = stmt.where(AuditLogRow.entity_id == entity_id)
        stmt = stmt.order_by(AuditLogRow.id)
        with self.session_factory() as session:
            return [
                AuditEntry(
                    company_id=r.company_id,
                    user_id=r.user_id,
                    entity_type=r.entity_type,
                    entity_id=r.entity_id,
                    action=r.action,
                    changes=json.loads(r.changes),
                    source=r.source,
                    created_at=_aware(r.created_at),
                )
                for r in session.scalars(stmt)
            ]


def _to_entry(row: CatalogItemRow) -> CatalogEntry:
    return CatalogEntry(
        id=row.id,
        name=row.item_name,
        category=row.category,
        unit=row.unit,
        sku=row.sku,
        branch_id=row.branch_id,
    )


class SqlCatalogReader:
    """Read-only catalog snapshots."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def list_entries(self, company_id: str, branch_id: str | None = None) -> list[CatalogEntry]:
        stmt = select(CatalogItemRow).where(CatalogItemRow.company_id == company_id)
        if branch_id is not None:
            stmt = stmt.where(CatalogItemRow.branch_id == branch_id)
        stmt = stmt.order_by(CatalogItemRow.item_name)
        with self.session_factory() as session:
            return [_to_entry(r) for r in session.scalars(stmt)]


def _to_message(row: MessageRow) -> ChatMessage:
    calls: tuple[ToolCall, ...] = ()
    if row.tool_calls:
        calls = tuple(ToolCall(**c) for c in json.loads(row.tool_calls))
    return ChatMessage(role=row.role, content=row.content, tool_calls=calls)  # type: ignore[arg-type]


class SqlConversationStore:
    """Conversations and their message history."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def get_or_create(
        self,
        company_id: str,
        user_id: str,
        conversation_id: str | None = None,
        branch_id: str | None = None,
        topic: str | None = None,
    ) -> str:
        """Return the id of the user's conversation, creating one if needed.

        An id that is unknown or belongs to someone else starts a new
        conversation rather than leaking the foreign one.
        """
        with self.session_factory() as session:
            if conversation_id:
                row = session.get(ConversationRow, conversation_id)
                if row is not None and row.company_id == company_id and row.user_id == user_id:
                    return row.id
            row = ConversationRow(
                company_id=company_id,
                user_id=user_id,
                branch_id=branch_id,
                topic=topic or "general",
            )
            session.add(row)
            session.commit()
            log.debug("conversation_created", conversation_id=row.id, user_id=user_id)
            return row.id

    def is_owned_by(self, conversation_id: str, company_id: str, user_id: str) -> bool:
        with self.session_factory() as session:
            row = session.get(ConversationRow, conversation_id)
            return row is not None and row.company_id == company_id and row.user_id == user_id

    def append(self, conversation_id: str, message: ChatMessage) -> None:
        calls = None
        if message.tool_calls:
            calls = json.dumps([
                {"id": c.id, "name": c.name, "arguments_json": c.arguments_json}
                for c in message.tool_calls
            ])
        now = datetime.now(timezone.utc)
        with self.session_factory() as session:
            session.add(MessageRow(
                conversation_id=conversation_id,
                role=message.role,
                content=message.content,
                tool_calls=calls,
                created_at=now,
            ))
            session.execute(
                update(ConversationRow)
                .where(ConversationRow.id == conversation_id)
                .values(last_message_at=now)
            )
            session.commit()

    def recent(self, conversation_id: str, limit: int) -> list[ChatMessage]:
        """The last ``limit`` messages, oldest first."""
        stmt = (
            select(MessageRow)
            .where(MessageRow.conversation_id == conversation_id)
            .order_by(MessageRow.id.desc())
            .limit(limit)
        )
        with self.session_factory() as session:
            rows = list(session.scalars(stmt))
        return [_to_message(r) for r in reversed(rows)]


def _to_draft(row: BomDraftRow) -> BomDraft:
    return BomDraft(
        id=row.id,
        company_id=row.company_id,
        user_id=row.user_id,
        name=row.name,
        document_ref=row.document_ref,
        status=row.status,  # type: ignore[arg-type]
        processing_error=row.processing_error,
        action_id=row.action_id,
        created_at=_aware(row.created_at),
    )


def _to_line(row: BomItemRow) -> BomLineItem:
    return BomLineItem(
        id=row.id,
        draft_id=row.draft_id,
        extracted_name=row.extracted_name,
        extracted_qty=row.extracted_qty,
        extracted_unit=row.extracted_unit,
        extracted_category=row.extracted_category,
        matched_item_id=row.matched_item_id,
        confidence_tier=row.confidence_tier,  # type: ignore[arg-type]
        match_reason=row.match_reason,
        manually_overridden=row.manually_overridden,
    )


class SqlBomStore:
    """BOM drafts and their extracted line items."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def create(self, company_id: str, user_id: str, name: str, document_ref: str) -> BomDraft:
        with self.session_factory() as session:
            row = BomDraftRow(
                company_id=company_id,
                user_id=user_id,
                name=name,
                document_ref=document_ref,
                status="UPLOADED",
            )
            session.add(row)
            session.commit()
            return _to_draft(row)

    def get(self, draft_id: str) -> BomDraft | None:
        with self.session_factory() as session:
            row = session.get(BomDraftRow, draft_id)
            return _to_draft(row) if row is not None else None

    def set_status(
        self,
        draft_id: str,
        status: str,
        processing_error: str | None = None,
        action_id: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status, "processing_error": processing_error}
        if action_id is not None:
            values["action_id"] = action_id
        with self.session_factory() as session:
            session.execute(update(BomDraftRow).where(BomDraftRow.id == draft_id).values(**values))
            session.commit()

    def claim(self, draft_id: str, expected: Sequence[str], new_status: str) -> bool:
        """Move a draft to ``new_status`` only if it is still in one of ``expected``."""
        with self.session_factory() as session:
            result = session.execute(
                update(BomDraftRow)
                .where(BomDraftRow.id == draft_id, BomDraftRow.status.in_(list(expected)))
                .values(status=new_status, processing_error=None)
            )
            session.commit()
            return result.rowcount == 1

    def replace_items(self, draft_id: str, items: Sequence[BomLineItem]) -> list[BomLineItem]:
        with self.session_factory() as session:
            draft = session.get(BomDraftRow, draft_id)
            draft.items.clear()
            session.flush()
            for position, item in enumerate(items):
                draft.items.append(BomItemRow(
                    position=position,
                    extracted_name=item.extracted_name,
                    extracted_qty=item.extracted_qty,
                    extracted_unit=item.extracted_unit,
                    extracted_category=item.extracted_category,
                    matched_item_id=item.matched_item_id,
                    confidence_tier=item.confidence_tier,
                    match_reason=item.match_reason,
                    manually_overridden=item.manually_overridden,
                ))
            session.commit()
            return [_to_line(r) for r in draft.items]

    def items(self, draft_id: str) -> list[BomLineItem]:
        stmt = select(BomItemRow).where(BomItemRow.draft_id == draft_id).order_by(BomItemRow.position)
        with self.session_factory() as session:
            return [_to_line(r) for r in session.scalars(stmt)]

    def update_items(self, draft_id: str, updates: Sequence[LineUpdate]) -> list[BomLineItem]:
        """Apply a batch of line corrections in one transaction.

        Raises NotFoundError, with nothing written, if any line is not part
        of the draft.
        """
        with self.session_factory() as session:
            for u in updates:
                row = session.get(BomItemRow, u.item_id)
                if row is None or row.draft_id != draft_id:
                    session.rollback()
                    raise NotFoundError(f"Line {u.item_id} not found in draft {draft_id}")
                if u.matched_item_id is not None:
                    row.matched_item_id = u.matched_item_id
                if u.quantity is not None:
                    row.extracted_qty = u.quantity
                row.manually_overridden = True
            session.commit()
        return self.items(draft_id)