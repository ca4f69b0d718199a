"""Explicit human approval or rejection of a proposed action."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from stockgate.executors import ExecutorRegistry
from stockgate.ledger import ActionLedger, LedgerError
from stockgate.types import ProposedAction, RequestContext

log = structlog.get_logger()


@dataclass
class ConfirmationResult:
    success: bool
    action: ProposedAction | None = None
    result: Any = None
    error: str | None = None
    ledger_error: LedgerError | None = None


class ConfirmationService:
    """The one place a live executor is handed to the ledger."""

    def __init__(self, ledger: ActionLedger, executors: ExecutorRegistry) -> None:
        self.ledger = ledger
        self.executors = executors

    def confirm(
        self, ctx: RequestContext, action_id: str, confirmed: bool
    ) -> ConfirmationResult:
        if not confirmed:
            outcome = self.ledger.cancel(action_id, ctx)
            if not outcome.ok:
                return ConfirmationResult(
                    success=False,
                    action=outcome.action,
                    error=outcome.error.message,
                    ledger_error=outcome.error,
                )
            return ConfirmationResult(success=True, action=outcome.action)

        outcome = self.ledger.confirm_and_execute(action_id, ctx, self.executors.bind(ctx))
        if not outcome.ok:
            log.info("confirm_refused", action_id=action_id, code=outcome.error.code)
            return ConfirmationResult(
                success=False,
                action=outcome.action,
                error=outcome.error.message,
                ledger_error=outcome.error,
            )

        execution = outcome.execution
        if execution is None or not execution.success:
            return ConfirmationResult(
                success=False,
                action=outcome.action,
                error=execution.error if execution else "Execution failed",
            )
        return ConfirmationResult(success=True, action=outcome.action, result=execution.data)
