"""Tests for the two-phase conversation orchestrator."""

import json

import pytest

from stockgate.errors import NotFoundError, UpstreamModelError, ValidationError
from stockgate.ledger import ActionLedger
from stockgate.orchestrator import ConversationOrchestrator, summarize_results
from stockgate.repository import InMemoryActionRepository, InMemoryCatalog, InMemoryConversationStore
from stockgate.types import (
    CatalogEntry,
    ExecutionResult,
    ModelTurn,
    RequestContext,
    ToolCall,
    ToolResult,
)

FIELD = RequestContext(user_id="u1", company_id="c1", role="FIELD", branch_id="b1")
WAREHOUSE = RequestContext(user_id="u2", company_id="c1", role="WAREHOUSE", branch_id="b1")

CATALOG = InMemoryCatalog({"c1": [
    CatalogEntry(id="mc", name="12/2 MC Cable", category="Wire", unit="ft", branch_id="b1"),
    CatalogEntry(id="b20", name="20A Breaker", category="Breakers", unit="ea", branch_id="b1"),
    CatalogEntry(id="b30", name="30A Breaker", category="Breakers", unit="ea", branch_id="b1"),
    CatalogEntry(id="box", name="4in Square Box", category="Boxes", unit="ea", branch_id="b1"),
]})


class MockChatModel:
    """Chat model that replays scripted turns and records what it was sent."""

    def __init__(self, *turns):
        self.turns = list(turns)
        self.calls = []

    def complete(self, system_prompt, messages, tools):
        self.calls.append({"system": system_prompt, "messages": list(messages), "tools": tools})
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return turn


class MockReads:
    def __init__(self, result=None):
        self.result = result or ExecutionResult(success=True, data={"items": [{"id": "mc"}]})
        self.calls = []

    def run_read(self, action_type, arguments_json, ctx):
        self.calls.append((action_type, arguments_json))
        return self.result


def call(name, args, call_id="call_0"):
    raw = args if isinstance(args, str) else json.dumps(args)
    return ToolCall(id=call_id, name=name, arguments_json=raw)


def make_orchestrator(model, reads=None, catalog=CATALOG):
    repo = InMemoryActionRepository()
    orchestrator = ConversationOrchestrator(
        chat_model=model,
        ledger=ActionLedger(repo),
        reads=reads or MockReads(),
        conversations=InMemoryConversationStore(),
        catalog=catalog,
    )
    return orchestrator, repo


class TestPlainReplies:
    def test_text_only_turn(self):
        model = MockChatModel(ModelTurn(text="Hi! What do you need?"))
        orchestrator, repo = make_orchestrator(model)

        response = orchestrator.handle_message(FIELD, "hello")

        assert response.reply == "Hi! What do you need?"
        assert not response.requires_confirmation
        assert len(model.calls) == 1
        assert repo.actions == {}

    def test_blank_message_rejected(self):
        orchestrator, _ = make_orchestrator(MockChatModel())
        with pytest.raises(ValidationError):
            orchestrator.handle_message(FIELD, "   ")

    def test_history_is_replayed_as_text(self):
        model = MockChatModel(ModelTurn(text="first"), ModelTurn(text="second"))
        orchestrator, _ = make_orchestrator(model)
        first = orchestrator.handle_message(FIELD, "one")
        orchestrator.handle_message(FIELD, "two", first.conversation_id)

        sent = model.calls[1]["messages"]
        assert [(m.role, m.content) for m in sent] == [
            ("user", "one"), ("assistant", "first"), ("user", "two"),
        ]

    def test_tools_follow_role(self):
        model = MockChatModel(ModelTurn(text="ok"))
        orchestrator, _ = make_orchestrator(model)
        orchestrator.handle_message(FIELD, "hi")
        names = [t.name for t in model.calls[0]["tools"]]
        assert "create_order" in names
        assert "update_inventory" not in names


class TestToolCalls:
    def test_read_runs_immediately(self):
        reads = MockReads()
        model = MockChatModel(
            ModelTurn(text="", tool_calls=[call("check_inventory", {"itemName": "mc"})]),
            ModelTurn(text="You have 12/2 MC Cable."),
        )
        orchestrator, repo = make_orchestrator(model, reads)

        response = orchestrator.handle_message(FIELD, "do we have mc?")

        assert reads.calls == [("check_inventory", '{"itemName": "mc"}')]
        assert response.reply == "You have 12/2 MC Cable."
        assert [r.status for r in response.executed_actions] == ["executed"]
        assert repo.actions == {}
        # phase 2 sees the tool result
        tool_messages = [m for m in model.calls[1]["messages"] if m.role == "tool"]
        assert json.loads(tool_messages[0].content) == {"items": [{"id": "mc"}]}
        assert tool_messages[0].tool_call_id == "call_0"

    def test_write_is_only_proposed(self):
        model = MockChatModel(
            ModelTurn(text="", tool_calls=[call("create_order", {
                "items": [{"itemName": "12/2 MC", "category": "Wire", "quantity": 100}],
            })]),
            ModelTurn(text="I've drafted that order, please confirm."),
        )
        orchestrator, repo = make_orchestrator(model)

        response = orchestrator.handle_message(FIELD, "order 100ft of 12/2 mc")

        assert response.requires_confirmation
        [action] = response.proposed_actions
        assert action.status == "PROPOSED"
        assert action.conversation_id == response.conversation_id
        stored_args = json.loads(action.arguments_json)
        assert stored_args["items"][0]["itemId"] == "mc"
        assert stored_args["items"][0]["match"]["tier"] == "HIGH"
        assert repo.transitions == []

    def test_write_without_capability_is_rejected(self):
        model = MockChatModel(
            ModelTurn(text="", tool_calls=[call("update_inventory", {"itemId": "mc", "delta": -10})]),
            ModelTurn(text="Sorry, you can't adjust inventory."),
        )
        orchestrator, repo = make_orchestrator(model)

        response = orchestrator.handle_message(FIELD, "remove 10 ft of mc")

        assert [r.status for r in response.declined] == ["rejected"]
        assert response.proposed_actions == []
        assert repo.actions == {}

    def test_manual_match_is_declined(self):
        model = MockChatModel(
            ModelTurn(text="", tool_calls=[call("create_order", {
                "items": [{"itemName": "breaker", "quantity": 2}],
            })]),
            ModelTurn(text="Which breaker?"),
        )
        orchestrator, repo = make_orchestrator(model)

        response = orchestrator.handle_message(FIELD, "order 2 breakers")

        [declined] = response.declined
        assert declined.status == "unresolved"
        assert declined.payload["items"][0]["text"] == "breaker"
        assert repo.actions == {}

    def test_same_name_in_two_branches_is_declined_without_a_branch(self):
        catalog = InMemoryCatalog({"c1": [
            CatalogEntry(id="mc-b1", name="12/2 MC Cable", category="Wire", unit="ft", branch_id="b1"),
            CatalogEntry(id="mc-b2", name="12/2 MC Cable", category="Wire", unit="ft", branch_id="b2"),
        ]})
        admin = RequestContext(user_id="u9", company_id="c1", role="ADMIN")
        model = MockChatModel(
            ModelTurn(text="", tool_calls=[call("create_order", {
                "items": [{"itemName": "12/2 MC Cable", "quantity": 100}],
            })]),
            ModelTurn(text="Which branch should this come from?"),
        )
        orchestrator, repo = make_orchestrator(model, catalog=catalog)

        response = orchestrator.handle_message(admin, "order 100ft of 12/2 MC Cable")

        [declined] = response.declined
        assert declined.status == "unresolved"
        assert "2 branches" in declined.payload["items"][0]["reason"]
        assert repo.actions == {}
        assert response.reply == "Which branch should this come from?"

    def test_low_match_is_proposed_for_review(self):
        model = MockChatModel(
            ModelTurn(text="", tool_calls=[call("create_order", {
                "items": [{"itemName": "junction box thing", "category": "Boxes", "quantity": 5}],
            })]),
            ModelTurn(text="Please check the match."),
        )
        orchestrator, _ = make_orchestrator(model)

        response = orchestrator.handle_message(FIELD, "5 junction boxes")

        [action] = response.proposed_actions
        assert json.loads(action.arguments_json)["items"][0]["itemId"] == "box"
        phase2_tool = [m for m in model.calls[1]["messages"] if m.role == "tool"][0]
        payload = json.loads(phase2_tool.content)
        assert payload["reviewRequired"] is True
        assert payload["matches"][0]["tier"] == "LOW"

    def test_invalid_arguments_are_declined(self):
        model = MockChatModel(
            ModelTurn(text="", tool_calls=[call("create_order", {"items": []})]),
            ModelTurn(text="What should I order?"),
        )
        orchestrator, repo = make_orchestrator(model)
        response = orchestrator.handle_message(FIELD, "order stuff")
        assert [r.status for r in response.declined] == ["invalid"]
        assert repo.actions == {}

    def test_mixed_calls(self):
        model = MockChatModel(
            ModelTurn(text="", tool_calls=[
                call("check_inventory", {"itemName": "breaker"}, "a"),
                call("create_order", {"items": [{"itemId": "b20", "quantity": 1}]}, "b"),
                call("update_inventory", {"itemId": "b20", "delta": 1}, "c"),
            ]),
            ModelTurn(text="Done looking, order drafted."),
        )
        orchestrator, _ = make_orchestrator(model)
        response = orchestrator.handle_message(FIELD, "check and order")
        assert [r.call_id for r in response.executed_actions] == ["a"]
        assert [a.action_type for a in response.proposed_actions] == ["create_order"]
        assert [r.call_id for r in response.declined] == ["c"]


class TestDegradedReplies:
    def test_phase1_failure(self):
        model = MockChatModel(UpstreamModelError("timeout"))
        orchestrator, _ = make_orchestrator(model)
        response = orchestrator.handle_message(FIELD, "hello")
        assert response.degraded
        assert "Nothing was changed" in response.reply

    def test_no_model_configured(self):
        orchestrator, _ = make_orchestrator(None)
        response = orchestrator.handle_message(FIELD, "hello")
        assert response.degraded

    def test_malformed_tool_json(self):
        model = MockChatModel(ModelTurn(text="", tool_calls=[call("create_order", '{"items": [')]))
        orchestrator, repo = make_orchestrator(model)
        response = orchestrator.handle_message(FIELD, "order")
        assert response.degraded
        assert repo.actions == {}

    def test_empty_phase1(self):
        orchestrator, _ = make_orchestrator(MockChatModel(ModelTurn(text="  ")))
        assert orchestrator.handle_message(FIELD, "hello").degraded

    def test_phase2_failure_keeps_proposal(self):
        model = MockChatModel(
            ModelTurn(text="", tool_calls=[call("create_order", {"items": [{"itemId": "mc", "quantity": 1}]})]),
            UpstreamModelError("boom"),
        )
        orchestrator, _ = make_orchestrator(model)
        response = orchestrator.handle_message(FIELD, "order one")
        assert not response.degraded
        assert len(response.proposed_actions) == 1
        assert "waiting for your confirmation" in response.reply


class TestMessages:
    def test_owner_sees_transcript(self):
        model = MockChatModel(ModelTurn(text="hey"))
        orchestrator, _ = make_orchestrator(model)
        response = orchestrator.handle_message(FIELD, "hi")
        messages = orchestrator.messages(FIELD, response.conversation_id)
        assert [m.content for m in messages] == ["hi", "hey"]

    def test_stranger_gets_not_found(self):
        model = MockChatModel(ModelTurn(text="hey"))
        orchestrator, _ = make_orchestrator(model)
        response = orchestrator.handle_message(FIELD, "hi")
        with pytest.raises(NotFoundError):
            orchestrator.messages(WAREHOUSE, response.conversation_id)


def test_summarize_results():
    text = summarize_results([
        ToolResult("a", "check_inventory", "executed", {"items": [1, 2]}),
        ToolResult("b", "create_order", "pending_confirmation", {"reviewRequired": True}),
        ToolResult("c", "update_inventory", "rejected", {"error": "no capability"}),
    ])
    assert text.splitlines() == [
        "check_inventory: 2 result(s).",
        "create_order: proposed, waiting for your confirmation (please review the matched items).",
        "update_inventory: not done - no capability.",
    ]
