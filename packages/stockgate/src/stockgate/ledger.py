"""The action ledger: gated, audited, at-most-once execution of proposed writes.

    PROPOSED --confirm--> CONFIRMED --execute ok----> EXECUTED
                                    --execute error-> FAILED
    PROPOSED --cancel---> CANCELLED

Every status change goes through the repository's compare-and-set, so two
requests racing on the same action cannot both leave PROPOSED. CONFIRMED is
committed before the executor runs; a retried confirm therefore sees
CONFIRMED (or a terminal status) and refuses to run the executor again.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

import structlog

from stockgate.errors import ExecutionError
from stockgate.repository import ActionRepository
from stockgate.types import (
    ActionStatus,
    AuditEntry,
    ExecutionResult,
    ProposedAction,
    RequestContext,
)

log = structlog.get_logger()

Executor = Callable[[str, str], ExecutionResult]

LedgerErrorCode = Literal["NOT_FOUND", "INVALID_TRANSITION"]


@dataclass(frozen=True)
class LedgerError:
    code: LedgerErrorCode
    message: str


@dataclass
class LedgerOutcome:
    action: ProposedAction | None
    error: LedgerError | None = None
    execution: ExecutionResult | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def idempotency_key(user_id: str, action_type: str, arguments_json: str) -> str:
    """Fingerprint of a request, shown to reviewers to spot repeats."""
    digest = hashlib.sha256(
        json.dumps({"u": user_id, "t": action_type, "a": arguments_json}).encode()
    ).hexdigest()[:16]
    return f"{user_id}-{action_type}-{digest}"


class ActionLedger:
    """Owns the lifecycle of proposed actions."""

    def __init__(
        self,
        repository: ActionRepository,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.clock = clock

    def propose(
        self,
        company_id: str,
        user_id: str,
        action_type: str,
        arguments_json: str,
        conversation_id: str | None = None,
    ) -> ProposedAction:
        """Record a new PROPOSED action. Identical requests make separate rows."""
        action = ProposedAction(
            id=str(uuid.uuid4()),
            company_id=company_id,
            user_id=user_id,
            conversation_id=conversation_id,
            action_type=action_type,
            arguments_json=arguments_json,
            status="PROPOSED",
            created_at=self.clock(),
            idempotency_key=idempotency_key(user_id, action_type, arguments_json),
        )
        stored = self.repository.insert(action)
        log.info(
            "action_proposed",
            action_id=stored.id,
            action_type=action_type,
            company_id=company_id,
            conversation_id=conversation_id,
        )
        return stored

    def get(self, action_id: str, requester: RequestContext) -> ProposedAction | None:
        action = self.repository.get(action_id)
        if action is None or not _owned_by(action, requester):
            return None
        return action

    def list_actions(
        self, requester: RequestContext, status: ActionStatus | None = None
    ) -> list[ProposedAction]:
        return self.repository.list_for_user(requester.company_id, requester.user_id, status)

    def cancel(self, action_id: str, requester: RequestContext) -> LedgerOutcome:
        """Cancel a PROPOSED action. Cancelling twice is a successful no-op."""
        action = self.get(action_id, requester)
        if action is None:
            return _not_found(action_id)
        if action.status == "CANCELLED":
            return LedgerOutcome(action=action)

        updated = self.repository.compare_and_set(action_id, "PROPOSED", "CANCELLED")
        if updated is not None:
            log.info("action_cancelled", action_id=action_id, user_id=requester.user_id)
            return LedgerOutcome(action=updated)

        # Lost a race, or was never PROPOSED: report what is stored now.
        current = self.repository.get(action_id)
        if current is not None and current.status == "CANCELLED":
            return LedgerOutcome(action=current)
        return _invalid(current or action, "cancel")

    def confirm_and_execute(
        self,
        action_id: str,
        requester: RequestContext,
        executor: Executor,
    ) -> LedgerOutcome:
        """Confirm a PROPOSED action and run its mutation exactly once."""
        action = self.get(action_id, requester)
        if action is None:
            return _not_found(action_id)
        if action.status != "PROPOSED":
            return _invalid(action, "confirm")

        confirmed = self.repository.compare_and_set(
            action_id, "PROPOSED", "CONFIRMED", {"confirmed_at": self.clock()}
        )
        if confirmed is None:
            current = self.repository.get(action_id) or action
            log.info("confirm_race_lost", action_id=action_id, status=current.status)
            return _invalid(current, "confirm")

        log.info("action_confirmed", action_id=action_id, action_type=action.action_type)

        try:
            execution = executor(confirmed.action_type, confirmed.arguments_json)
        except ExecutionError as e:
            execution = ExecutionResult(success=False, error=str(e))
        except Exception as e:
            # The action is already CONFIRMED; it must still reach an outcome.
            log.exception("executor_crashed", action_id=action_id, action_type=action.action_type)
            execution = ExecutionResult(success=False, error=f"{type(e).__name__}: {e}")

        if execution.success:
            return self._mark_executed(confirmed, requester, execution)
        return self._mark_failed(confirmed, execution)

    def stale_confirmed(self, older_than: timedelta) -> list[ProposedAction]:
        """Actions stuck in CONFIRMED, i.e. interrupted between confirm and outcome."""
        return self.repository.list_confirmed_before(self.clock() - older_than)

    def _mark_executed(
        self,
        action: ProposedAction,
        requester: RequestContext,
        execution: ExecutionResult,
    ) -> LedgerOutcome:
        result = execution.data if execution.data is not None else {}
        result_json = json.dumps(result, default=str)
        now = self.clock()
        audit = AuditEntry(
            company_id=action.company_id,
            user_id=requester.user_id,
            entity_type=action.action_type,
            entity_id=action.id,
            action="EXECUTE",
            changes={"proposed": _load(action.arguments_json), "result": _load(result_json)},
            source="ai" if action.conversation_id else "bom",
            created_at=now,
        )
        updated = self.repository.compare_and_set(
            action.id,
            "CONFIRMED",
            "EXECUTED",
            {"executed_at": now, "result_json": result_json},
            audit=audit,
        )
        if updated is None:
            # Only this request holds the CONFIRMED row; losing it means the
            # store was changed behind the ledger's back.
            raise RuntimeError(f"Action {action.id} left CONFIRMED while executing")
        log.info("action_executed", action_id=action.id, action_type=action.action_type)
        return LedgerOutcome(action=updated, execution=execution)

    def _mark_failed(self, action: ProposedAction, execution: ExecutionResult) -> LedgerOutcome:
        message = execution.error or "Execution failed"
        updated = self.repository.compare_and_set(
            action.id,
            "CONFIRMED",
            "FAILED",
            {"executed_at": self.clock(), "error_message": message},
        )
        if updated is None:
            raise RuntimeError(f"Action {action.id} left CONFIRMED while executing")
        log.warning(
            "action_failed",
            action_id=action.id,
            action_type=action.action_type,
            error=message,
        )
        return LedgerOutcome(
            action=updated,
            execution=ExecutionResult(success=False, data=execution.data, error=message),
        )


def _owned_by(action: ProposedAction, requester: RequestContext) -> bool:
    return action.company_id == requester.company_id and action.user_id == requester.user_id


def _not_found(action_id: str) -> LedgerOutcome:
    return LedgerOutcome(
        action=None, error=LedgerError("NOT_FOUND", f"Action {action_id} not found")
    )


def _invalid(action: ProposedAction, verb: str) -> LedgerOutcome:
    return LedgerOutcome(
        action=action,
        error=LedgerError(
            "INVALID_TRANSITION",
            f"Cannot {verb} action {action.id}: it is {action.status}",
        ),
    )


def _load(raw: str) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw
