"""Tests for the SQLAlchemy-backed stores."""

from datetime import datetime, timedelta, timezone

import pytest

from stockgate.db import AuditLogRow
from stockgate.errors import NotFoundError
from stockgate.ledger import ActionLedger
from stockgate.sql_store import (
    SqlActionRepository,
    SqlBomStore,
    SqlCatalogReader,
    SqlConversationStore,
)
from stockgate.types import (
    AuditEntry,
    BomLineItem,
    ChatMessage,
    ExecutionResult,
    LineUpdate,
    RequestContext,
    ToolCall,
)

COMPANY = "co-1"

OWNER = RequestContext(user_id="u1", company_id=COMPANY, role="FIELD")


def ok_executor(action_type, arguments_json):
    return ExecutionResult(success=True, data={"done": True})


class TestSqlActionRepository:
    def test_propose_and_get_round_trip(self, session_factory):
        ledger = ActionLedger(SqlActionRepository(session_factory))
        action = ledger.propose(COMPANY, "u1", "create_order", '{"items": []}', "conv-1")
        stored = ledger.repository.get(action.id)
        assert stored.status == "PROPOSED"
        assert stored.created_at.tzinfo is not None
        assert stored.conversation_id == "conv-1"

    def test_compare_and_set_only_once(self, session_factory):
        repo = SqlActionRepository(session_factory)
        ledger = ActionLedger(repo)
        action = ledger.propose(COMPANY, "u1", "create_order", "{}")

        # two callers that both read PROPOSED before either writes
        first = repo.compare_and_set(action.id, "PROPOSED", "CONFIRMED")
        second = repo.compare_and_set(action.id, "PROPOSED", "CONFIRMED")

        assert first is not None and first.status == "CONFIRMED"
        assert second is None

    def test_rejects_missing_edge_before_touching_the_row(self, session_factory):
        repo = SqlActionRepository(session_factory)
        action = ActionLedger(repo).propose(COMPANY, "u1", "create_order", "{}")
        with pytest.raises(ValueError):
            repo.compare_and_set(action.id, "PROPOSED", "EXECUTED")
        assert repo.get(action.id).status == "PROPOSED"

    def test_audit_written_with_executed_transition(self, session_factory):
        repo = SqlActionRepository(session_factory)
        ledger = ActionLedger(repo)
        action = ledger.propose(COMPANY, "u1", "create_order", '{"a": 1}', "conv-1")

        outcome = ledger.confirm_and_execute(action.id, OWNER, ok_executor)

        assert outcome.action.status == "EXECUTED"
        [entry] = repo.audit_entries(COMPANY, action.id)
        assert entry.changes == {"proposed": {"a": 1}, "result": {"done": True}}
        assert entry.source == "ai"

    def test_audit_not_written_when_cas_loses(self, session_factory):
        repo = SqlActionRepository(session_factory)
        action = ActionLedger(repo).propose(COMPANY, "u1", "create_order", "{}")
        audit = AuditEntry(
            company_id=COMPANY, user_id="u1", entity_type="create_order",
            entity_id=action.id, action="EXECUTE", changes={},
        )
        # still PROPOSED, so CONFIRMED -> EXECUTED cannot apply
        assert repo.compare_and_set(action.id, "CONFIRMED", "EXECUTED", audit=audit) is None
        with session_factory() as session:
            assert session.query(AuditLogRow).count() == 0

    def test_list_for_user_newest_first(self, session_factory):
        base = datetime(2026, 3, 1, tzinfo=timezone.utc)
        ticks = iter([base, base + timedelta(minutes=1), base + timedelta(minutes=2)])
        repo = SqlActionRepository(session_factory)
        ledger = ActionLedger(repo, clock=lambda: next(ticks))
        a = ledger.propose(COMPANY, "u1", "create_order", "{}")
        b = ledger.propose(COMPANY, "u1", "create_order", "{}")
        ledger.propose(COMPANY, "u2", "create_order", "{}")

        assert [x.id for x in repo.list_for_user(COMPANY, "u1")] == [b.id, a.id]
        assert repo.list_for_user(COMPANY, "u1", "CANCELLED") == []

    def test_list_confirmed_before(self, session_factory):
        repo = SqlActionRepository(session_factory)
        action = ActionLedger(repo).propose(COMPANY, "u1", "create_order", "{}")
        confirmed_at = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
        repo.compare_and_set(action.id, "PROPOSED", "CONFIRMED", {"confirmed_at": confirmed_at})

        assert repo.list_confirmed_before(confirmed_at - timedelta(minutes=1)) == []
        [stale] = repo.list_confirmed_before(confirmed_at + timedelta(minutes=1))
        assert stale.id == action.id


class TestSqlCatalogReader:
    def test_scoped_to_company_and_branch(self, session_factory, catalog_rows):
        reader = SqlCatalogReader(session_factory)
        entries = reader.list_entries(COMPANY)
        assert {e.id for e in entries} == set(catalog_rows.values())
        assert reader.list_entries(COMPANY, "b2") == []
        assert [e.name for e in entries] == sorted(e.name for e in entries)

    def test_maps_columns(self, session_factory, catalog_rows):
        [mc] = [e for e in SqlCatalogReader(session_factory).list_entries(COMPANY) if e.id == "mc-122"]
        assert mc.name == "12/2 MC Cable"
        assert mc.category == "Wire"
        assert mc.unit == "ft"
        assert mc.branch_id == "b1"


class TestSqlConversationStore:
    def test_get_or_create_reuses_own_conversation(self, session_factory):
        store = SqlConversationStore(session_factory)
        conv = store.get_or_create(COMPANY, "u1")
        assert store.get_or_create(COMPANY, "u1", conv) == conv
        assert store.is_owned_by(conv, COMPANY, "u1")

    def test_foreign_conversation_is_not_reused(self, session_factory):
        store = SqlConversationStore(session_factory)
        conv = store.get_or_create(COMPANY, "u1")
        other = store.get_or_create(COMPANY, "u2", conv)
        assert other != conv
        assert not store.is_owned_by(conv, COMPANY, "u2")

    def test_recent_is_oldest_first_and_limited(self, session_factory):
        store = SqlConversationStore(session_factory)
        conv = store.get_or_create(COMPANY, "u1")
        for i in range(5):
            store.append(conv, ChatMessage(role="user", content=f"m{i}"))
        assert [m.content for m in store.recent(conv, 3)] == ["m2", "m3", "m4"]

    def test_tool_calls_survive_storage(self, session_factory):
        store = SqlConversationStore(session_factory)
        conv = store.get_or_create(COMPANY, "u1")
        call = ToolCall(id="call_0", name="check_inventory", arguments_json='{"itemName": "wire"}')
        store.append(conv, ChatMessage(role="assistant", content="", tool_calls=(call,)))
        [message] = store.recent(conv, 10)
        assert message.tool_calls == (call,)


def make_line(name, tier="HIGH", matched="mc-122"):
    return BomLineItem(
        id="", draft_id="", extracted_name=name, extracted_qty=2, extracted_unit=None,
        extracted_category=None, matched_item_id=matched, confidence_tier=tier, match_reason="r",
    )


class TestSqlBomStore:
    def test_create_and_get(self, session_factory):
        store = SqlBomStore(session_factory)
        draft = store.create(COMPANY, "u1", "Job 12", "job12.txt")
        fetched = store.get(draft.id)
        assert fetched.status == "UPLOADED"
        assert fetched.name == "Job 12"
        assert store.get("missing") is None

    def test_claim_is_conditional(self, session_factory):
        store = SqlBomStore(session_factory)
        draft = store.create(COMPANY, "u1", "Job", "doc.txt")
        assert store.claim(draft.id, ["UPLOADED", "FAILED"], "PROCESSING")
        assert not store.claim(draft.id, ["UPLOADED", "FAILED"], "PROCESSING")
        assert store.get(draft.id).status == "PROCESSING"

    def test_replace_items_keeps_order(self, session_factory, catalog_rows):
        store = SqlBomStore(session_factory)
        draft = store.create(COMPANY, "u1", "Job", "doc.txt")
        store.replace_items(draft.id, [make_line("a"), make_line("b")])
        lines = store.replace_items(draft.id, [make_line("c"), make_line("d"), make_line("e")])

        assert [l.extracted_name for l in lines] == ["c", "d", "e"]
        assert [l.extracted_name for l in store.items(draft.id)] == ["c", "d", "e"]

    def test_update_items_marks_override(self, session_factory, catalog_rows):
        store = SqlBomStore(session_factory)
        draft = store.create(COMPANY, "u1", "Job", "doc.txt")
        [line] = store.replace_items(draft.id, [make_line("brk", tier="MANUAL", matched=None)])

        [updated] = store.update_items(
            draft.id, [LineUpdate(item_id=line.id, matched_item_id="brk-20", quantity=7)]
        )

        assert updated.matched_item_id == "brk-20"
        assert updated.extracted_qty == 7
        assert updated.manually_overridden
        assert updated.confidence_tier == "MANUAL"

    def test_update_items_from_another_draft(self, session_factory, catalog_rows):
        store = SqlBomStore(session_factory)
        a = store.create(COMPANY, "u1", "A", "a.txt")
        b = store.create(COMPANY, "u1", "B", "b.txt")
        [line] = store.replace_items(a.id, [make_line("x")])
        with pytest.raises(NotFoundError):
            store.update_items(b.id, [LineUpdate(item_id=line.id, quantity=3)])
        assert store.items(a.id)[0].extracted_qty == 2

    def test_update_items_is_all_or_nothing(self, session_factory, catalog_rows):
        store = SqlBomStore(session_factory)
        draft = store.create(COMPANY, "u1", "Job", "doc.txt")
        first, second = store.replace_items(draft.id, [make_line("a"), make_line("b")])

        with pytest.raises(NotFoundError):
            store.update_items(draft.id, [
                LineUpdate(item_id=first.id, quantity=999),
                LineUpdate(item_id="does-not-exist", quantity=1),
                LineUpdate(item_id=second.id, matched_item_id="brk-20"),
            ])

        after = store.items(draft.id)
        assert [l.extracted_qty for l in after] == [2, 2]
        assert [l.matched_item_id for l in after] == ["mc-122", "mc-122"]
        assert not any(l.manually_overridden for l in after)

    def test_set_status_records_error_and_action(self, session_factory):
        store = SqlBomStore(session_factory)
        draft = store.create(COMPANY, "u1", "Job", "doc.txt")
        store.set_status(draft.id, "FAILED", processing_error="no lines")
        assert store.get(draft.id).processing_error == "no lines"
        store.set_status(draft.id, "SUBMITTED", action_id="act-1")
        fetched = store.get(draft.id)
        assert fetched.status == "SUBMITTED"
        assert fetched.action_id == "act-1"
        assert fetched.processing_error is None
