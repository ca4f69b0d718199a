"""Tool registry: the operations the assistant may request, and their arguments.

Each known tool carries its own pydantic argument model. Argument payloads
for tools this build does not know are kept verbatim in ``UnknownArgs``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from stockgate.errors import MalformedPayloadError, ValidationError
from stockgate.resolver import ItemReference
from stockgate.types import ActionKind, MatchCandidate


class ToolArgs(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class LineMatch(ToolArgs):
    """How a free-text item reference was tied to a catalog entry."""

    tier: str
    reason: str


class CheckInventoryArgs(ToolArgs):
    item_name: str = Field(..., min_length=1)
    branch_id: str | None = None


class GetInventoryDetailsArgs(ToolArgs):
    below_par_only: bool = False
    branch_id: str | None = None


class GetMyOrdersArgs(ToolArgs):
    limit: int | None = Field(None, ge=1, le=100)


class SearchOrdersArgs(ToolArgs):
    query: str = ""
    status: str | None = None


class _ItemRef(ToolArgs):
    item_id: str | None = None
    item_name: str | None = None
    category: str | None = None
    unit: str | None = None
    match: LineMatch | None = None

    @model_validator(mode="after")
    def _needs_id_or_name(self):
        if not self.item_id and not (self.item_name and self.item_name.strip()):
            raise ValueError("itemId or itemName is required")
        return self

    def reference(self) -> ItemReference:
        return ItemReference(
            item_id=self.item_id, name=self.item_name, category=self.category, unit=self.unit
        )


class OrderLine(_ItemRef):
    quantity: int = Field(..., ge=1)


class CreateOrderArgs(ToolArgs):
    items: list[OrderLine] = Field(..., min_length=1)
    order_type: Literal["AD_HOC", "WEEKLY_STOCK", "TRANSFER"] = "AD_HOC"
    notes: str | None = None
    branch_id: str | None = None
    source: Literal["ai", "bom"] = "ai"
    bom_draft_id: str | None = None


class PulledItem(ToolArgs):
    item_id: str
    qty: int = Field(..., ge=1)


class PullOrderItemsArgs(ToolArgs):
    order_id: str
    pulled_items: list[PulledItem] = Field(..., min_length=1)


class RequestBranchTransferArgs(_ItemRef):
    from_branch: str
    to_branch: str
    quantity: int = Field(..., ge=1)
    notes: str | None = None


class UpdateInventoryArgs(_ItemRef):
    delta: int
    reason: str | None = None

    @model_validator(mode="after")
    def _nonzero(self):
        if self.delta == 0:
            raise ValueError("delta must not be zero")
        return self


@dataclass(frozen=True)
class UnknownArgs:
    """Arguments for a tool this build does not know, kept as received."""

    raw_json: str


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    kind: ActionKind
    capability: str
    parameters: dict[str, Any]
    args_model: type[ToolArgs]


_ITEM_REF_PROPERTIES: dict[str, Any] = {
    "itemId": {"type": "string", "description": "Catalog id from check_inventory results"},
    "itemName": {"type": "string", "description": "Item name when the id is not known"},
    "category": {"type": "string"},
    "unit": {"type": "string"},
}

TOOLS: dict[str, ToolDefinition] = {
    "check_inventory": ToolDefinition(
        name="check_inventory",
        description="Searches warehouse inventory for matching items and returns quantities",
        kind="READ",
        capability="inventory:read",
        parameters={
            "type": "object",
            "properties": {
                "itemName": {"type": "string"},
                "branchId": {"type": "string"},
            },
            "required": ["itemName"],
        },
        args_model=CheckInventoryArgs,
    ),
    "get_inventory_details": ToolDefinition(
        name="get_inventory_details",
        description="Returns inventory below par level or matching filters",
        kind="READ",
        capability="inventory:read",
        parameters={
            "type": "object",
            "properties": {
                "belowParOnly": {"type": "boolean"},
                "branchId": {"type": "string"},
            },
        },
        args_model=GetInventoryDetailsArgs,
    ),
    "get_my_orders": ToolDefinition(
        name="get_my_orders",
        description="Returns a summary of the user's recent orders",
        kind="READ",
        capability="orders:read",
        parameters={
            "type": "object",
            "properties": {"limit": {"type": "integer"}},
        },
        args_model=GetMyOrdersArgs,
    ),
    "search_orders": ToolDefinition(
        name="search_orders",
        description="Searches orders by number or status",
        kind="READ",
        capability="orders:search",
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "status": {"type": "string"},
            },
            "required": ["query"],
        },
        args_model=SearchOrdersArgs,
    ),
    "create_order": ToolDefinition(
        name="create_order",
        description="Creates an order for the user to confirm",
        kind="WRITE",
        capability="orders:create",
        parameters={
            "type": "object",
            "properties": {
                "items": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            **_ITEM_REF_PROPERTIES,
                            "quantity": {"type": "integer"},
                        },
                        "required": ["quantity"],
                    },
                },
                "orderType": {
                    "type": "string",
                    "enum": ["AD_HOC", "WEEKLY_STOCK", "TRANSFER"],
                },
                "notes": {"type": "string"},
            },
            "required": ["items"],
        },
        args_model=CreateOrderArgs,
    ),
    "pull_order_items": ToolDefinition(
        name="pull_order_items",
        description="Marks order items as pulled for fulfillment",
        kind="WRITE",
        capability="orders:pull",
        parameters={
            "type": "object",
            "properties": {
                "orderId": {"type": "string"},
                "pulledItems": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "itemId": {"type": "string"},
                            "qty": {"type": "integer"},
                        },
                        "required": ["itemId", "qty"],
                    },
                },
            },
            "required": ["orderId", "pulledItems"],
        },
        args_model=PullOrderItemsArgs,
    ),
    "request_branch_transfer": ToolDefinition(
        name="request_branch_transfer",
        description="Creates a pending branch transfer request",
        kind="WRITE",
        capability="transfers:request",
        parameters={
            "type": "object",
            "properties": {
                "fromBranch": {"type": "string"},
                "toBranch": {"type": "string"},
                **_ITEM_REF_PROPERTIES,
                "quantity": {"type": "integer"},
                "notes": {"type": "string"},
            },
            "required": ["fromBranch", "toBranch", "quantity"],
        },
        args_model=RequestBranchTransferArgs,
    ),
    "update_inventory": ToolDefinition(
        name="update_inventory",
        description="Adjusts inventory quantities",
        kind="WRITE",
        capability="inventory:adjust",
        parameters={
            "type": "object",
            "properties": {
                **_ITEM_REF_PROPERTIES,
                "delta": {"type": "integer"},
                "reason": {"type": "string"},
            },
            "required": ["delta"],
        },
        args_model=UpdateInventoryArgs,
    ),
}


def parse_arguments(action_type: str, arguments_json: str) -> ToolArgs | UnknownArgs:
    """Parse a raw argument payload into the tool's typed arguments.

    Raises MalformedPayloadError if the payload is not a JSON object and
    ValidationError if it does not fit the tool's schema.
    """
    try:
        data = json.loads(arguments_json or "{}")
    except json.JSONDecodeError as e:
        raise MalformedPayloadError(
            f"Arguments for {action_type} are not valid JSON: {e.msg}", raw=arguments_json
        ) from e
    if not isinstance(data, dict):
        raise MalformedPayloadError(
            f"Arguments for {action_type} must be a JSON object", raw=arguments_json
        )

    tool = TOOLS.get(action_type)
    if tool is None:
        return UnknownArgs(raw_json=arguments_json)

    try:
        return tool.args_model.model_validate(data)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid arguments for {action_type}: {problems}") from e


def dump_arguments(args: ToolArgs | UnknownArgs) -> str:
    if isinstance(args, UnknownArgs):
        return args.raw_json
    return args.model_dump_json(by_alias=True, exclude_none=True)


def item_references(args: ToolArgs | UnknownArgs) -> list[ItemReference]:
    """Catalog item references a tool call's arguments point at."""
    if isinstance(args, CreateOrderArgs):
        return [line.reference() for line in args.items]
    if isinstance(args, (RequestBranchTransferArgs, UpdateInventoryArgs)):
        return [args.reference()]
    return []


def apply_resolution(args: ToolArgs, candidates: list[MatchCandidate]) -> ToolArgs:
    """Return a copy of ``args`` with resolved catalog ids and match notes filled in."""

    def resolved(ref: _ItemRef, candidate: MatchCandidate) -> _ItemRef:
        return ref.model_copy(update={
            "item_id": candidate.catalog_item_id,
            "match": LineMatch(tier=candidate.confidence_tier, reason=candidate.reason),
        })

    if isinstance(args, CreateOrderArgs):
        lines = [resolved(line, c) for line, c in zip(args.items, candidates)]
        return args.model_copy(update={"items": lines})
    if isinstance(args, (RequestBranchTransferArgs, UpdateInventoryArgs)):
        return resolved(args, candidates[0])
    return args
