"""Executors that carry out each tool against the inventory database.

Every executor is scoped to the caller's company. Write executors run in a
single transaction; anything they cannot do raises ExecutionError. That, and
any database error inside the transaction, ``ExecutorRegistry.execute`` turns
into a failed ExecutionResult.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog
from rapidfuzz import fuzz
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from stockgate.actions import (
    CheckInventoryArgs,
    CreateOrderArgs,
    GetInventoryDetailsArgs,
    GetMyOrdersArgs,
    PullOrderItemsArgs,
    RequestBranchTransferArgs,
    SearchOrdersArgs,
    UnknownArgs,
    UpdateInventoryArgs,
    parse_arguments,
)
from stockgate.classifier import capabilities_for_role, classify
from stockgate.db import (
    CatalogItemRow,
    InventoryTransactionRow,
    OrderItemRow,
    OrderRow,
    PartRequestRow,
)
from stockgate.errors import AuthorizationError, ExecutionError, ValidationError
from stockgate.normalize import fold, keywords, search_variations
from stockgate.types import ExecutionResult, RequestContext

log = structlog.get_logger()

SEARCH_LIMIT = 20
DETAILS_LIMIT = 50
DEFAULT_ORDER_LIMIT = 10

Handler = Callable[[Session, Any, RequestContext], dict]


class ExecutorRegistry:
    """Dispatches tool calls to their executors."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory
        self._handlers: dict[str, Handler] = {
            "check_inventory": _check_inventory,
            "get_inventory_details": _get_inventory_details,
            "get_my_orders": _get_my_orders,
            "search_orders": _search_orders,
            "create_order": _create_order,
            "pull_order_items": _pull_order_items,
            "request_branch_transfer": _request_branch_transfer,
            "update_inventory": _update_inventory,
        }

    def bind(self, ctx: RequestContext) -> Callable[[str, str], ExecutionResult]:
        """An executor callable for the ledger, acting on behalf of ``ctx``."""
        return lambda action_type, arguments_json: self.execute(action_type, arguments_json, ctx)

    def run_read(
        self, action_type: str, arguments_json: str, ctx: RequestContext
    ) -> ExecutionResult:
        """Run a READ tool immediately. Refuses anything that could write."""
        classification = classify(action_type, capabilities_for_role(ctx.role))
        if classification.kind != "READ":
            raise AuthorizationError(
                f"{action_type} cannot run without confirmation: {classification.reason}"
            )
        return self.execute(action_type, arguments_json, ctx)

    def execute(
        self, action_type: str, arguments_json: str, ctx: RequestContext
    ) -> ExecutionResult:
        classification = classify(action_type, capabilities_for_role(ctx.role))
        if classification.rejected:
            return ExecutionResult(success=False, error=classification.reason)

        try:
            args = parse_arguments(action_type, arguments_json)
        except ValidationError as e:
            return ExecutionResult(success=False, error=str(e))

        handler = self._handlers.get(action_type)
        if handler is None or isinstance(args, UnknownArgs):
            return ExecutionResult(success=False, error=f"{action_type} is not implemented")

        try:
            with self.session_factory() as session, session.begin():
                data = handler(session, args, ctx)
        except ExecutionError as e:
            log.warning("executor_failed", action_type=action_type, error=str(e))
            return ExecutionResult(success=False, error=str(e))
        except SQLAlchemyError as e:
            log.error("executor_storage_error", action_type=action_type, error=str(e))
            return ExecutionResult(success=False, error=f"Storage error while running {action_type}")

        log.info("executor_done", action_type=action_type, company_id=ctx.company_id)
        return ExecutionResult(success=True, data=data)


def _inventory(ctx: RequestContext, branch_id: str | None):
    stmt = select(CatalogItemRow).where(CatalogItemRow.company_id == ctx.company_id)
    branch = branch_id or ctx.branch_id
    if branch:
        stmt = stmt.where(CatalogItemRow.branch_id == branch)
    return stmt


def _name_matches_any(terms: list[str]):
    return or_(*[CatalogItemRow.item_name.icontains(t, autoescape=True) for t in terms])


def _check_inventory(session: Session, args: CheckInventoryArgs, ctx: RequestContext) -> dict:
    base = _inventory(ctx, args.branch_id)
    variations = search_variations(args.item_name)
    rows = list(session.scalars(base.where(_name_matches_any(variations)))) if variations else []
    if not rows:
        words = keywords(args.item_name)
        if words:
            rows = list(session.scalars(base.where(_name_matches_any(words))))

    term = fold(args.item_name)
    ranked = sorted(
        rows,
        key=lambda r: (-fuzz.WRatio(term, fold(r.item_name)), r.item_name),
    )[:SEARCH_LIMIT]
    return {"items": [r.to_dict() for r in ranked], "searchedFor": args.item_name}


def _get_inventory_details(
    session: Session, args: GetInventoryDetailsArgs, ctx: RequestContext
) -> dict:
    stmt = _inventory(ctx, args.branch_id)
    if args.below_par_only:
        stmt = stmt.where(CatalogItemRow.current_qty < CatalogItemRow.par_level)
    stmt = stmt.order_by(CatalogItemRow.current_qty, CatalogItemRow.item_name).limit(DETAILS_LIMIT)
    return {"items": [r.to_dict() for r in session.scalars(stmt)]}


def _order_summary(order: OrderRow) -> dict:
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "status": order.status,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "branchId": order.branch_id,
    }


def _get_my_orders(session: Session, args: GetMyOrdersArgs, ctx: RequestContext) -> dict:
    stmt = (
        select(OrderRow)
        .where(OrderRow.company_id == ctx.company_id, OrderRow.user_id == ctx.user_id)
        .order_by(OrderRow.created_at.desc())
        .limit(args.limit or DEFAULT_ORDER_LIMIT)
    )
    return {"orders": [_order_summary(o) for o in session.scalars(stmt)]}


def _search_orders(session: Session, args: SearchOrdersArgs, ctx: RequestContext) -> dict:
    stmt = select(OrderRow).where(OrderRow.company_id == ctx.company_id)
    if ctx.role.upper() == "FIELD":
        stmt = stmt.where(OrderRow.user_id == ctx.user_id)
    if args.status:
        stmt = stmt.where(OrderRow.status == args.status.upper())
    if args.query:
        stmt = stmt.where(OrderRow.order_number.icontains(args.query, autoescape=True))
    stmt = stmt.order_by(OrderRow.created_at.desc()).limit(SEARCH_LIMIT)
    return {"orders": [_order_summary(o) for o in session.scalars(stmt)]}


def _catalog_item(session: Session, ctx: RequestContext, item_id: str | None) -> CatalogItemRow:
    if not item_id:
        raise ExecutionError("Item is not resolved to a catalog entry")
    item = session.get(CatalogItemRow, item_id)
    if item is None or item.company_id != ctx.company_id:
        raise ExecutionError(f"Catalog item {item_id} no longer exists")
    return item


def _next_order_number(session: Session, company_id: str, prefix: str) -> str:
    count = session.scalar(
        select(func.count()).select_from(OrderRow).where(OrderRow.company_id == company_id)
    )
    return f"{prefix}{(count or 0) + 1:06d}"


def _create_order(session: Session, args: CreateOrderArgs, ctx: RequestContext) -> dict:
    # the catalog may have changed since the proposal was made
    for line in args.items:
        _catalog_item(session, ctx, line.item_id)

    prefix = "BOM-" if args.source == "bom" else "ORD-"
    order = OrderRow(
        company_id=ctx.company_id,
        user_id=ctx.user_id,
        order_number=_next_order_number(session, ctx.company_id, prefix),
        order_type=args.order_type,
        status="PENDING",
        notes=args.notes,
        branch_id=args.branch_id or ctx.branch_id,
        items=[
            OrderItemRow(warehouse_item_id=line.item_id, requested_qty=line.quantity)
            for line in args.items
        ],
    )
    session.add(order)
    session.flush()
    log.info("order_created", order_number=order.order_number, lines=len(args.items))
    return {"order": order.to_dict()}


def _pull_order_items(session: Session, args: PullOrderItemsArgs, ctx: RequestContext) -> dict:
    order = session.get(OrderRow, args.order_id)
    if order is None or order.company_id != ctx.company_id:
        raise ExecutionError(f"Order {args.order_id} not found")

    by_id = {item.id: item for item in order.items}
    for pulled in args.pulled_items:
        order_item = by_id.get(pulled.item_id)
        if order_item is None:
            raise ExecutionError(f"Line {pulled.item_id} is not part of order {order.order_number}")
        order_item.pulled_qty = pulled.qty
        stock = session.get(CatalogItemRow, order_item.warehouse_item_id)
        if stock is None:
            continue
        if stock.current_qty < pulled.qty:
            raise ExecutionError(
                f"Pulling {pulled.qty} of {stock.item_name} would leave "
                f"{stock.current_qty - pulled.qty} on hand"
            )
        stock.current_qty -= pulled.qty

    order.status = "IN_PROGRESS"
    session.flush()
    return {"order": order.to_dict()}


def _request_branch_transfer(
    session: Session, args: RequestBranchTransferArgs, ctx: RequestContext
) -> dict:
    item = _catalog_item(session, ctx, args.item_id)
    transfer = PartRequestRow(
        company_id=ctx.company_id,
        requested_by=ctx.user_id,
        item_name=item.item_name,
        description=f"Transfer from {args.from_branch} to {args.to_branch}",
        quantity=args.quantity,
        status="PENDING",
        notes=args.notes,
    )
    session.add(transfer)
    session.flush()
    return {"transfer": transfer.to_dict()}


def _update_inventory(session: Session, args: UpdateInventoryArgs, ctx: RequestContext) -> dict:
    item = _catalog_item(session, ctx, args.item_id)
    if item.current_qty + args.delta < 0:
        raise ExecutionError(
            f"Adjusting {item.item_name} by {args.delta} would leave "
            f"{item.current_qty + args.delta} on hand"
        )
    item.current_qty += args.delta
    session.add(InventoryTransactionRow(
        company_id=ctx.company_id,
        item_id=item.id,
        delta=args.delta,
        reason=args.reason or "AI adjustment",
        source="ai",
        created_by=ctx.user_id,
    ))
    session.flush()
    return {"item": item.to_dict()}
