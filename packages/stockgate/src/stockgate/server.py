"""FastAPI server for the assistant and BOM endpoints."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import sessionmaker

from stockgate.bom import (
    BomService,
    DocumentSource,
    LLMBomExtractor,
    PlainTextDocumentSource,
)
from stockgate.config import AppConfig
from stockgate.confirmation import ConfirmationService
from stockgate.errors import (
    AmbiguousCatalogError,
    AuthorizationError,
    InvalidTransition,
    NotFoundError,
    UpstreamModelError,
    ValidationError,
)
from stockgate.executors import ExecutorRegistry
from stockgate.ledger import ActionLedger
from stockgate.llm import ChatModel, TextModel
from stockgate.orchestrator import ConversationOrchestrator
from stockgate.sql_store import (
    SqlActionRepository,
    SqlBomStore,
    SqlCatalogReader,
    SqlConversationStore,
)
from stockgate.types import (
    BomDraft,
    BomLineItem,
    LineUpdate,
    ProposedAction,
    RequestContext,
    ToolResult,
)

log = structlog.get_logger()


@dataclass
class Services:
    ledger: ActionLedger
    orchestrator: ConversationOrchestrator
    confirmation: ConfirmationService
    bom: BomService


def build_services(
    config: AppConfig,
    session_factory: sessionmaker,
    chat_model: ChatModel | None = None,
    text_model: TextModel | None = None,
    documents: DocumentSource | None = None,
) -> Services:
    """Wire the pipeline over one database."""
    ledger = ActionLedger(SqlActionRepository(session_factory))
    executors = ExecutorRegistry(session_factory)
    catalog = SqlCatalogReader(session_factory)
    orchestrator = ConversationOrchestrator(
        chat_model=chat_model,
        ledger=ledger,
        reads=executors,
        conversations=SqlConversationStore(session_factory),
        catalog=catalog,
        config=config.orchestrator,
    )
    extractor = LLMBomExtractor(text_model, config.extraction) if text_model is not None else None
    bom = BomService(
        store=SqlBomStore(session_factory),
        catalog=catalog,
        documents=documents or PlainTextDocumentSource(),
        extractor=extractor,
        ledger=ledger,
    )
    return Services(
        ledger=ledger,
        orchestrator=orchestrator,
        confirmation=ConfirmationService(ledger, executors),
        bom=bom,
    )


class ApiModel(BaseModel):
    """Base model that reads and writes camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatRequest(ApiModel):
    """Request body for a chat message."""

    message: str
    conversation_id: str | None = None
    topic: str | None = None


class ActionOut(ApiModel):
    """A proposed action as returned to the client."""

    id: str
    action_type: str
    status: str
    arguments: Any
    result: Any = None
    error_message: str | None = None
    conversation_id: str | None = None
    idempotency_key: str | None = None
    created_at: datetime
    confirmed_at: datetime | None = None
    executed_at: datetime | None = None


class ToolResultOut(ApiModel):
    """Outcome of one tool call in a chat turn."""

    call_id: str
    name: str
    status: str
    payload: dict[str, Any]


class ChatOut(ApiModel):
    """Response body for a chat message."""

    conversation_id: str
    reply: str
    proposed_actions: list[ActionOut]
    executed_actions: list[ToolResultOut]
    declined: list[ToolResultOut]
    requires_confirmation: bool
    degraded: bool = False


class ConfirmRequest(ApiModel):
    """Request body for confirming or cancelling an action."""

    action_id: str
    confirmed: bool


class ConfirmOut(ApiModel):
    """Response body for a confirmation."""

    success: bool
    action: ActionOut | None = None
    result: Any = None
    error: str | None = None


class MessageOut(ApiModel):
    """One message of a conversation transcript."""

    role: str
    content: str
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)


class CreateDraftRequest(ApiModel):
    """Request body for creating a BOM draft."""

    name: str
    document_ref: str


class ProcessRequest(ApiModel):
    """Request body for processing a BOM draft."""

    bom_draft_id: str


class LineOut(ApiModel):
    """One extracted BOM line with its catalog match."""

    id: str
    extracted_name: str
    extracted_qty: int
    extracted_unit: str | None = None
    extracted_category: str | None = None
    matched_item_id: str | None = None
    confidence_tier: str
    match_reason: str
    manually_overridden: bool


class DraftOut(ApiModel):
    """A BOM draft and its lines."""

    id: str
    name: str
    document_ref: str
    status: str
    processing_error: str | None = None
    action_id: str | None = None
    created_at: datetime | None = None
    items: list[LineOut] = Field(default_factory=list)


class ProcessOut(ApiModel):
    """Response body for processing a BOM draft."""

    items: list[LineOut]
    matched_count: int
    total_count: int


class LineUpdateIn(ApiModel):
    """A reviewer's correction to one BOM line."""

    id: str
    matched_item_id: str | None = None
    quantity: int | None = None


class UpdateDraftRequest(ApiModel):
    """Request body for editing BOM lines."""

    items: list[LineUpdateIn]


class SubmitRequest(ApiModel):
    """Request body for submitting a reviewed BOM draft."""

    bom_draft_id: str
    branch_id: str | None = None
    notes: str | None = None


class SubmitOut(ApiModel):
    """Response body for a submitted BOM draft."""

    success: bool
    bom_draft_id: str
    action: ActionOut


def _loads(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def action_out(a: ProposedAction) -> ActionOut:
    return ActionOut(
        id=a.id,
        action_type=a.action_type,
        status=a.status,
        arguments=_loads(a.arguments_json),
        result=_loads(a.result_json),
        error_message=a.error_message,
        conversation_id=a.conversation_id,
        idempotency_key=a.idempotency_key,
        created_at=a.created_at,
        confirmed_at=a.confirmed_at,
        executed_at=a.executed_at,
    )


def _tool_out(r: ToolResult) -> ToolResultOut:
    return ToolResultOut(call_id=r.call_id, name=r.name, status=r.status, payload=r.payload)


def _line_out(i: BomLineItem) -> LineOut:
    return LineOut(
        id=i.id,
        extracted_name=i.extracted_name,
        extracted_qty=i.extracted_qty,
        extracted_unit=i.extracted_unit,
        extracted_category=i.extracted_category,
        matched_item_id=i.matched_item_id,
        confidence_tier=i.confidence_tier,
        match_reason=i.match_reason,
        manually_overridden=i.manually_overridden,
    )


def _draft_out(d: BomDraft, items: list[BomLineItem]) -> DraftOut:
    return DraftOut(
        id=d.id,
        name=d.name,
        document_ref=d.document_ref,
        status=d.status,
        processing_error=d.processing_error,
        action_id=d.action_id,
        created_at=d.created_at,
        items=[_line_out(i) for i in items],
    )


def request_context(
    x_user_id: str | None = Header(None),
    x_company_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
    x_branch_id: str | None = Header(None),
    x_user_name: str | None = Header(None),
) -> RequestContext:
    """Identity set by the upstream gateway after it validated the session."""
    if not x_user_id or not x_company_id or not x_user_role:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return RequestContext(
        user_id=x_user_id,
        company_id=x_company_id,
        role=x_user_role.upper(),
        branch_id=x_branch_id or None,
        user_name=x_user_name,
    )


_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (AuthorizationError, 403),
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidTransition, 409),
    (UpstreamModelError, 502),
]


def create_app(services: Services) -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(title="stockgate")

    for error_type, status in _STATUS_BY_ERROR:
        def handler(request: Request, exc: Exception, status: int = status) -> JSONResponse:
            log.info("request_refused", path=request.url.path, status=status, error=str(exc))
            return JSONResponse(status_code=status, content={"error": str(exc)})

        app.add_exception_handler(error_type, handler)

    @app.exception_handler(AmbiguousCatalogError)
    def ambiguous_catalog(request: Request, exc: AmbiguousCatalogError) -> JSONResponse:
        log.error(
            "ambiguous_catalog",
            path=request.url.path,
            name=exc.name,
            entry_ids=exc.entry_ids,
        )
        return JSONResponse(status_code=500, content={"error": "Catalog data is inconsistent"})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/ai-assistant/chat")
    def chat(req: ChatRequest, ctx: RequestContext = Depends(request_context)) -> ChatOut:
        """Send a message; writes come back as proposed actions."""
        response = services.orchestrator.handle_message(
            ctx, req.message, req.conversation_id, req.topic
        )
        return ChatOut(
            conversation_id=response.conversation_id,
            reply=response.reply,
            proposed_actions=[action_out(a) for a in response.proposed_actions],
            executed_actions=[_tool_out(r) for r in response.executed_actions],
            declined=[_tool_out(r) for r in response.declined],
            requires_confirmation=response.requires_confirmation,
            degraded=response.degraded,
        )

    @app.post("/api/ai-assistant/confirm-action")
    def confirm_action(
        req: ConfirmRequest, ctx: RequestContext = Depends(request_context)
    ) -> ConfirmOut:
        """Approve or reject a proposed action."""
        result = services.confirmation.confirm(ctx, req.action_id, req.confirmed)
        if result.ledger_error is not None:
            if result.ledger_error.code == "NOT_FOUND":
                raise NotFoundError(result.ledger_error.message)
            raise InvalidTransition(result.ledger_error.message)
        return ConfirmOut(
            success=result.success,
            action=action_out(result.action) if result.action else None,
            result=result.result,
            error=result.error,
        )

    @app.get("/api/ai-assistant/actions")
    def list_actions(
        status: str | None = None, ctx: RequestContext = Depends(request_context)
    ) -> list[ActionOut]:
        return [action_out(a) for a in services.ledger.list_actions(ctx, status)]

    @app.get("/api/ai-assistant/conversations/{conversation_id}")
    def conversation(
        conversation_id: str, ctx: RequestContext = Depends(request_context)
    ) -> list[MessageOut]:
        return [
            MessageOut(
                role=m.role,
                content=m.content,
                tool_calls=[
                    {"name": c.name, "arguments": _loads(c.arguments_json)} for c in m.tool_calls
                ],
            )
            for m in services.orchestrator.messages(ctx, conversation_id)
        ]

    @app.post("/api/ai-bom/drafts")
    def create_draft(
        req: CreateDraftRequest, ctx: RequestContext = Depends(request_context)
    ) -> DraftOut:
        draft = services.bom.create_draft(ctx, req.name, req.document_ref)
        return _draft_out(draft, [])

    @app.get("/api/ai-bom/drafts/{draft_id}")
    def get_draft(draft_id: str, ctx: RequestContext = Depends(request_context)) -> DraftOut:
        draft, items = services.bom.get_draft(ctx, draft_id)
        return _draft_out(draft, items)

    @app.patch("/api/ai-bom/drafts/{draft_id}")
    def update_draft(
        draft_id: str, req: UpdateDraftRequest, ctx: RequestContext = Depends(request_context)
    ) -> DraftOut:
        """Reviewer overrides of matched items and quantities."""
        services.bom.update_items(ctx, draft_id, [
            LineUpdate(item_id=u.id, matched_item_id=u.matched_item_id, quantity=u.quantity)
            for u in req.items
        ])
        draft, items = services.bom.get_draft(ctx, draft_id)
        return _draft_out(draft, items)

    @app.post("/api/ai-bom/process")
    def process(req: ProcessRequest, ctx: RequestContext = Depends(request_context)) -> ProcessOut:
        result = services.bom.process_draft(ctx, req.bom_draft_id)
        return ProcessOut(
            items=[_line_out(i) for i in result.items],
            matched_count=result.matched_count,
            total_count=result.total_count,
        )

    @app.post("/api/ai-bom/submit-order")
    def submit_order(
        req: SubmitRequest, ctx: RequestContext = Depends(request_context)
    ) -> SubmitOut:
        """Propose an order from a reviewed draft. It still needs confirmation."""
        action = services.bom.submit_draft(ctx, req.bom_draft_id, req.branch_id, req.notes)
        return SubmitOut(success=True, bom_draft_id=req.bom_draft_id, action=action_out(action))

    return app
