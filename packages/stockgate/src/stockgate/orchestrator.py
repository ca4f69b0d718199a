"""Two-phase conversation handling.

Phase 1 asks the chat model what to do. Every tool call it returns is
classified: reads run immediately, writes are only proposed to the ledger.
Phase 2 hands the results back so the model can phrase the reply. Nothing in
this module can execute a write.
"""

from __future__ import annotations

import json
from typing import Protocol

import structlog

from stockgate.actions import (
    ToolArgs,
    UnknownArgs,
    apply_resolution,
    dump_arguments,
    item_references,
    parse_arguments,
)
from stockgate.classifier import available_tools, capabilities_for_role, classify
from stockgate.config import OrchestratorConfig
from stockgate.errors import (
    MalformedPayloadError,
    NotFoundError,
    UpstreamModelError,
    ValidationError,
)
from stockgate.ledger import ActionLedger
from stockgate.llm import ChatModel
from stockgate.prompts import system_prompt
from stockgate.repository import CatalogReader, ConversationStore
from stockgate.resolver import CandidateResolver, needs_review
from stockgate.types import (
    CatalogEntry,
    ChatMessage,
    ChatResponse,
    ExecutionResult,
    ProposedAction,
    RequestContext,
    ToolCall,
    ToolResult,
)

log = structlog.get_logger()


class ReadExecutor(Protocol):
    """Runs READ tools. Must refuse anything that is not READ."""

    def run_read(
        self, action_type: str, arguments_json: str, ctx: RequestContext
    ) -> ExecutionResult: ...


class ConversationOrchestrator:
    def __init__(
        self,
        chat_model: ChatModel | None,
        ledger: ActionLedger,
        reads: ReadExecutor,
        conversations: ConversationStore,
        catalog: CatalogReader,
        config: OrchestratorConfig | None = None,
        resolver: CandidateResolver | None = None,
    ) -> None:
        self.chat_model = chat_model
        self.ledger = ledger
        self.reads = reads
        self.conversations = conversations
        self.catalog = catalog
        self.config = config or OrchestratorConfig()
        self.resolver = resolver or CandidateResolver()

    def handle_message(
        self,
        ctx: RequestContext,
        message: str,
        conversation_id: str | None = None,
        topic: str | None = None,
    ) -> ChatResponse:
        if not message or not message.strip():
            raise ValidationError("Message is required")

        conv_id = self.conversations.get_or_create(
            ctx.company_id, ctx.user_id, conversation_id, ctx.branch_id, topic
        )
        self.conversations.append(conv_id, ChatMessage(role="user", content=message.strip()))

        # Earlier turns are replayed as plain text; their tool traffic is done.
        history = [
            ChatMessage(role=m.role, content=m.content)
            for m in self.conversations.recent(conv_id, self.config.history_window)
            if m.role in ("user", "assistant") and m.content
        ]
        tools = available_tools(capabilities_for_role(ctx.role))
        prompt = system_prompt(ctx, tools, self.config.assistant_name)

        if self.chat_model is None:
            return self._degraded(conv_id, "chat_model_not_configured")

        try:
            turn = self.chat_model.complete(prompt, history, tools)
        except UpstreamModelError as e:
            return self._degraded(conv_id, "phase1_failed", error=str(e))

        if not turn.tool_calls:
            if not turn.text.strip():
                return self._degraded(conv_id, "phase1_empty")
            return self._reply(conv_id, turn.text.strip(), ())

        parsed: list[tuple[ToolCall, ToolArgs | UnknownArgs | ValidationError]] = []
        for call in turn.tool_calls:
            try:
                parsed.append((call, parse_arguments(call.name, call.arguments_json)))
            except MalformedPayloadError as e:
                log.warning(
                    "tool_call_malformed",
                    conversation_id=conv_id,
                    tool=call.name,
                    error=str(e),
                    raw=e.raw[:200],
                )
                return self._degraded(conv_id, "tool_call_malformed")
            except ValidationError as e:
                parsed.append((call, e))

        results, proposed = self._dispatch(ctx, conv_id, parsed)

        followup = [
            *history,
            ChatMessage(role="assistant", content=turn.text, tool_calls=tuple(turn.tool_calls)),
            *(
                ChatMessage(
                    role="tool",
                    content=json.dumps(r.payload, default=str),
                    tool_call_id=r.call_id,
                    name=r.name,
                )
                for r in results
            ),
        ]
        reply = ""
        try:
            final = self.chat_model.complete(prompt, followup, tools)
            reply = final.text.strip()
            if final.tool_calls:
                log.info("phase2_tool_calls_ignored", count=len(final.tool_calls))
        except UpstreamModelError as e:
            log.warning("phase2_failed", conversation_id=conv_id, error=str(e))
        if not reply:
            reply = turn.text.strip() or summarize_results(results)

        self._persist(conv_id, reply, turn.tool_calls)
        return ChatResponse(
            conversation_id=conv_id,
            reply=reply,
            proposed_actions=proposed,
            executed_actions=[r for r in results if r.status in ("executed", "error")],
            declined=[r for r in results if r.status in ("rejected", "invalid", "unresolved")],
        )

    def messages(
        self, ctx: RequestContext, conversation_id: str, limit: int = 100
    ) -> list[ChatMessage]:
        if not self.conversations.is_owned_by(conversation_id, ctx.company_id, ctx.user_id):
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return self.conversations.recent(conversation_id, limit)

    def _dispatch(
        self,
        ctx: RequestContext,
        conv_id: str,
        parsed: list[tuple[ToolCall, ToolArgs | UnknownArgs | ValidationError]],
    ) -> tuple[list[ToolResult], list[ProposedAction]]:
        capabilities = capabilities_for_role(ctx.role)
        snapshots: dict[str | None, list[CatalogEntry]] = {}
        results: list[ToolResult] = []
        proposed: list[ProposedAction] = []

        for call, args in parsed:
            classification = classify(call.name, capabilities)
            if classification.rejected:
                log.info("tool_call_rejected", tool=call.name, reason=classification.reason)
                results.append(ToolResult(
                    call.id, call.name, "rejected", {"error": classification.reason}
                ))
                continue
            if isinstance(args, ValidationError):
                log.info("tool_call_invalid", tool=call.name, error=str(args))
                results.append(ToolResult(call.id, call.name, "invalid", {"error": str(args)}))
                continue

            if classification.kind == "READ":
                execution = self.reads.run_read(call.name, call.arguments_json, ctx)
                if execution.success:
                    results.append(ToolResult(call.id, call.name, "executed", execution.data or {}))
                else:
                    results.append(ToolResult(
                        call.id, call.name, "error", {"error": execution.error}
                    ))
                continue

            refs = item_references(args)
            review: list[dict] = []
            if refs:
                branch = getattr(args, "branch_id", None) or ctx.branch_id
                if branch not in snapshots:
                    snapshots[branch] = self.catalog.list_entries(ctx.company_id, branch)
                candidates = self.resolver.resolve_item_refs(refs, snapshots[branch])
                unresolved = [c for c in candidates if c.confidence_tier == "MANUAL"]
                if unresolved:
                    results.append(ToolResult(call.id, call.name, "unresolved", {
                        "error": "Some items could not be matched to the catalog",
                        "items": [{"text": c.source_text, "reason": c.reason} for c in unresolved],
                    }))
                    continue
                args = apply_resolution(args, candidates)
                review = [
                    {"text": c.source_text, "tier": c.confidence_tier, "reason": c.reason}
                    for c in candidates
                    if needs_review(c)
                ]

            action = self.ledger.propose(
                ctx.company_id,
                ctx.user_id,
                call.name,
                dump_arguments(args),
                conversation_id=conv_id,
            )
            proposed.append(action)
            payload: dict = {
                "status": "pending_confirmation",
                "actionId": action.id,
                "message": "Waiting for the user to confirm",
            }
            if review:
                payload["reviewRequired"] = True
                payload["matches"] = review
            results.append(ToolResult(call.id, call.name, "pending_confirmation", payload))

        return results, proposed

    def _persist(self, conv_id: str, reply: str, tool_calls) -> None:
        self.conversations.append(
            conv_id, ChatMessage(role="assistant", content=reply, tool_calls=tuple(tool_calls))
        )

    def _reply(self, conv_id: str, reply: str, tool_calls) -> ChatResponse:
        self._persist(conv_id, reply, tool_calls)
        return ChatResponse(conversation_id=conv_id, reply=reply)

    def _degraded(self, conv_id: str, reason: str, **fields) -> ChatResponse:
        log.warning("chat_degraded", conversation_id=conv_id, reason=reason, **fields)
        reply = self.config.fallback_reply
        self._persist(conv_id, reply, ())
        return ChatResponse(conversation_id=conv_id, reply=reply, degraded=True)


def summarize_results(results: list[ToolResult]) -> str:
    """Plain-text reply built from tool results when the model gives none."""
    lines = []
    for r in results:
        if r.status == "pending_confirmation":
            note = " (please review the matched items)" if r.payload.get("reviewRequired") else ""
            lines.append(f"{r.name}: proposed, waiting for your confirmation{note}.")
        elif r.status == "executed":
            found = r.payload.get("items", r.payload.get("orders"))
            if isinstance(found, list):
                lines.append(f"{r.name}: {len(found)} result(s).")
            else:
                lines.append(f"{r.name}: done.")
        else:
            lines.append(f"{r.name}: not done - {r.payload.get('error', r.status)}.")
    return "\n".join(lines)
