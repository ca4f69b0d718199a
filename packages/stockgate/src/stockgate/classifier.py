"""READ/WRITE classification of requested operations.

An operation is READ only when it cannot change persisted state. Everything
that creates, updates or deletes a record is WRITE and goes through the
action ledger; there is no exception for "small" writes.
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from typing import Literal

from stockgate.actions import TOOLS, ToolDefinition

ClassificationKind = Literal["READ", "WRITE", "REJECTED"]

_FIELD = frozenset({"inventory:read", "orders:read", "orders:create"})
_WAREHOUSE = _FIELD | {"orders:search", "orders:pull", "transfers:request", "inventory:adjust"}

ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    "FIELD": _FIELD,
    "WAREHOUSE": _WAREHOUSE,
    "ADMIN": _WAREHOUSE,
}


@dataclass(frozen=True)
class Classification:
    kind: ClassificationKind
    action_type: str
    reason: str
    capability: str | None = None

    @property
    def rejected(self) -> bool:
        return self.kind == "REJECTED"


def capabilities_for_role(role: str) -> frozenset[str]:
    return ROLE_CAPABILITIES.get((role or "").upper(), frozenset())


def classify(action_type: str, capabilities: Collection[str]) -> Classification:
    tool = TOOLS.get(action_type)
    if tool is None:
        return Classification(
            kind="REJECTED",
            action_type=action_type,
            reason=f"Unknown operation '{action_type}'",
        )
    if tool.capability not in capabilities:
        return Classification(
            kind="REJECTED",
            action_type=action_type,
            reason=f"Your role cannot use '{action_type}' (needs {tool.capability})",
            capability=tool.capability,
        )
    return Classification(
        kind=tool.kind,
        action_type=action_type,
        reason="read-only lookup" if tool.kind == "READ" else "changes stored data",
        capability=tool.capability,
    )


def available_tools(capabilities: Collection[str]) -> list[ToolDefinition]:
    """Tools a caller with these capabilities may request, in registry order."""
    return [t for t in TOOLS.values() if t.capability in capabilities]
