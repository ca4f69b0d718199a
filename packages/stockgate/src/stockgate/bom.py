"""Bill-of-materials import: extract lines from a planset, match, review, submit.

Submitting a draft never creates an order directly. It proposes a
``create_order`` action that goes through the same confirmation step as a
chat request.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from stockgate.actions import CreateOrderArgs, LineMatch, OrderLine, dump_arguments
from stockgate.classifier import capabilities_for_role, classify
from stockgate.config import ExtractionConfig
from stockgate.errors import (
    AuthorizationError,
    NotFoundError,
    UpstreamModelError,
    ValidationError,
)
from stockgate.ledger import ActionLedger
from stockgate.llm import TextModel
from stockgate.prompts import planset_prompt
from stockgate.repository import CatalogReader
from stockgate.resolver import BLOCKING_TIERS, CandidateResolver
from stockgate.sql_store import SqlBomStore
from stockgate.types import (
    BomDraft,
    BomLineItem,
    CatalogEntry,
    ExtractedLine,
    LineUpdate,
    ProposedAction,
    RequestContext,
)

log = structlog.get_logger()

_FENCE = re.compile(r"```(?:json)?\s*")


class DocumentSource(Protocol):
    """Turns a stored document reference into its text."""

    def read_text(self, document_ref: str) -> str: ...


class PlainTextDocumentSource:
    """Documents already converted to text, stored as files under ``root``."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = root

    def read_text(self, document_ref: str) -> str:
        path = Path(document_ref) if self.root is None else self.root / document_ref
        if not path.is_file():
            raise NotFoundError(f"Document {document_ref} not found")
        return path.read_text(encoding="utf-8")


class BomExtractor(Protocol):
    def extract(self, document_text: str, catalog: Sequence[CatalogEntry]) -> list[ExtractedLine]: ...


def parse_extraction(raw: str) -> list[ExtractedLine]:
    """Parse the model's JSON array of materials, tolerating code fences.

    Entries without a name or a positive quantity are dropped; fractional
    quantities are rounded up.
    """
    cleaned = _FENCE.sub("", raw or "").strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise UpstreamModelError("Failed to parse AI response - invalid JSON format") from e
    if not isinstance(data, list):
        raise UpstreamModelError("AI response is not a JSON array")

    lines: list[ExtractedLine] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("itemName") or "").strip()
        try:
            quantity = math.ceil(float(entry.get("quantity")))
        except (TypeError, ValueError):
            continue
        if not name or quantity <= 0:
            continue
        lines.append(ExtractedLine(
            name=name,
            quantity=quantity,
            unit=(entry.get("unit") or None),
            category=(entry.get("category") or None),
        ))

    if not lines:
        raise UpstreamModelError("No valid materials found in document")
    return lines


class LLMBomExtractor:
    """BomExtractor that asks a text model to read the planset."""

    def __init__(self, model: TextModel, config: ExtractionConfig | None = None) -> None:
        self.model = model
        self.config = config or ExtractionConfig()

    def extract(self, document_text: str, catalog: Sequence[CatalogEntry]) -> list[ExtractedLine]:
        if not document_text or not document_text.strip():
            raise ValidationError("No text content found in document")
        prompt = planset_prompt(
            catalog,
            document_text,
            max_catalog_context=self.config.max_catalog_context,
            max_document_chars=self.config.max_document_chars,
        )
        lines = parse_extraction(self.model.query(prompt))
        log.info("bom_extracted", lines=len(lines), chars=len(document_text))
        return lines


@dataclass
class ProcessResult:
    items: list[BomLineItem]
    matched_count: int
    total_count: int


class BomService:
    def __init__(
        self,
        store: SqlBomStore,
        catalog: CatalogReader,
        documents: DocumentSource,
        extractor: BomExtractor | None,
        ledger: ActionLedger,
        resolver: CandidateResolver | None = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.documents = documents
        self.extractor = extractor
        self.ledger = ledger
        self.resolver = resolver or CandidateResolver()

    def create_draft(self, ctx: RequestContext, name: str, document_ref: str) -> BomDraft:
        if not name or not name.strip():
            raise ValidationError("Draft name is required")
        if not document_ref or not document_ref.strip():
            raise ValidationError("Document reference is required")
        draft = self.store.create(ctx.company_id, ctx.user_id, name.strip(), document_ref.strip())
        log.info("bom_draft_created", draft_id=draft.id, company_id=ctx.company_id)
        return draft

    def get_draft(self, ctx: RequestContext, draft_id: str) -> tuple[BomDraft, list[BomLineItem]]:
        draft = self._load(ctx, draft_id)
        return draft, self.store.items(draft_id)

    def process_draft(self, ctx: RequestContext, draft_id: str) -> ProcessResult:
        """Extract, match and store the draft's lines.

        On any failure the draft is left FAILED with the error recorded and
        the exception is re-raised.
        """
        draft = self._load(ctx, draft_id)
        if draft.status == "PROCESSING":
            raise ValidationError("Draft is already being processed")
        if draft.status == "SUBMITTED":
            raise ValidationError("Draft has already been submitted")
        if not self.store.claim(draft_id, ("UPLOADED", "PROCESSED", "FAILED"), "PROCESSING"):
            raise ValidationError("Draft is already being processed")

        try:
            catalog = self.catalog.list_entries(ctx.company_id, ctx.branch_id)
            if not catalog:
                raise ValidationError(
                    "Your warehouse is empty - please add items before processing BOMs"
                )
            if self.extractor is None:
                raise UpstreamModelError("Document extraction is not configured")
            text = self.documents.read_text(draft.document_ref)
            lines = self.extractor.extract(text, catalog)
            candidates = self.resolver.resolve_lines(lines, catalog)
            items = self.store.replace_items(draft_id, [
                BomLineItem(
                    id="",
                    draft_id=draft_id,
                    extracted_name=line.name,
                    extracted_qty=line.quantity,
                    extracted_unit=line.unit,
                    extracted_category=line.category,
                    matched_item_id=c.catalog_item_id,
                    confidence_tier=c.confidence_tier,
                    match_reason=c.reason,
                )
                for line, c in zip(lines, candidates)
            ])
        except Exception as e:
            self.store.set_status(draft_id, "FAILED", processing_error=str(e))
            log.warning("bom_processing_failed", draft_id=draft_id, error=str(e))
            raise

        self.store.set_status(draft_id, "PROCESSED")
        matched = sum(1 for i in items if i.matched_item_id)
        log.info("bom_processed", draft_id=draft_id, matched=matched, total=len(items))
        return ProcessResult(items=items, matched_count=matched, total_count=len(items))

    def update_items(
        self, ctx: RequestContext, draft_id: str, updates: Sequence[LineUpdate]
    ) -> list[BomLineItem]:
        draft = self._load(ctx, draft_id)
        if draft.status in ("SUBMITTED", "PROCESSING"):
            raise ValidationError(f"Draft cannot be edited while {draft.status}")

        known = {e.id for e in self.catalog.list_entries(ctx.company_id)}
        for u in updates:
            if u.matched_item_id is not None and u.matched_item_id not in known:
                raise ValidationError(f"Catalog item {u.matched_item_id} does not exist")
            if u.quantity is not None and u.quantity < 1:
                raise ValidationError("Quantity must be at least 1")

        items = self.store.update_items(draft_id, updates)
        log.info("bom_items_updated", draft_id=draft_id, updates=len(updates))
        return items

    def submit_draft(
        self,
        ctx: RequestContext,
        draft_id: str,
        branch_id: str | None = None,
        notes: str | None = None,
    ) -> ProposedAction:
        """Propose an order for the reviewed draft."""
        draft = self._load(ctx, draft_id)
        if draft.status == "SUBMITTED":
            raise ValidationError("Draft has already been submitted")
        if draft.status != "PROCESSED":
            raise ValidationError("Draft must be processed before submitting")

        classification = classify("create_order", capabilities_for_role(ctx.role))
        if classification.rejected:
            raise AuthorizationError(classification.reason)

        items = self.store.items(draft_id)
        if not items:
            raise ValidationError("Draft has no items")
        unmatched = [i.extracted_name for i in items if not i.matched_item_id]
        if unmatched:
            raise ValidationError(
                "All items must have warehouse matches before submitting: " + ", ".join(unmatched)
            )
        unreviewed = [
            i.extracted_name for i in items
            if i.confidence_tier in BLOCKING_TIERS and not i.manually_overridden
        ]
        if unreviewed:
            raise ValidationError(
                "Low-confidence matches must be reviewed before submitting: "
                + ", ".join(unreviewed)
            )

        if not self.store.claim(draft_id, ("PROCESSED",), "SUBMITTED"):
            raise ValidationError("Draft has already been submitted")

        label = f"Generated from AI BOM: {draft.name}"
        args = CreateOrderArgs(
            items=[
                OrderLine(
                    item_id=i.matched_item_id,
                    item_name=i.extracted_name,
                    quantity=i.extracted_qty,
                    match=LineMatch(tier=i.confidence_tier, reason=i.match_reason),
                )
                for i in items
            ],
            order_type="AD_HOC",
            notes=f"{notes}\n\n{label}" if notes else label,
            branch_id=branch_id,
            source="bom",
            bom_draft_id=draft_id,
        )
        try:
            action = self.ledger.propose(
                ctx.company_id, ctx.user_id, "create_order", dump_arguments(args)
            )
        except Exception:
            self.store.set_status(draft_id, "PROCESSED")
            raise
        self.store.set_status(draft_id, "SUBMITTED", action_id=action.id)
        log.info("bom_submitted", draft_id=draft_id, action_id=action.id, lines=len(items))
        return action

    def _load(self, ctx: RequestContext, draft_id: str) -> BomDraft:
        draft = self.store.get(draft_id)
        if draft is None or draft.company_id != ctx.company_id:
            raise NotFoundError(f"Draft {draft_id} not found")
        return draft
