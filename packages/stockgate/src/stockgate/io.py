"""CSV/Excel input and output for offline matching."""

from __future__ import annotations

import math
from collections.abc import Sequence
from pathlib import Path

import pandas as pd

from stockgate.types import CatalogEntry, ExtractedLine, MatchCandidate


def _read_table(path: str | Path) -> pd.DataFrame:
    path = Path(path)
    if path.suffix.lower() in (".xlsx", ".xls"):
        return pd.read_excel(path, dtype=str)
    return pd.read_csv(path, dtype=str)


def _cell(row: pd.Series, column: str) -> str | None:
    value = row.get(column)
    if value is None or pd.isna(value):
        return None
    text = str(value).strip()
    return text or None


def read_catalog(path: str | Path) -> list[CatalogEntry]:
    """Read catalog entries.

    Columns: ``id``, ``name``, ``category``, ``unit`` and optionally ``sku``
    and ``branch_id``. Rows without an id or name are skipped.
    """
    df = _read_table(path)
    entries: list[CatalogEntry] = []
    for _, row in df.iterrows():
        item_id, name = _cell(row, "id"), _cell(row, "name")
        if not item_id or not name:
            continue
        entries.append(CatalogEntry(
            id=item_id,
            name=name,
            category=_cell(row, "category") or "Uncategorized",
            unit=_cell(row, "unit") or "ea",
            sku=_cell(row, "sku"),
            branch_id=_cell(row, "branch_id"),
        ))
    return entries


def read_lines(path: str | Path) -> list[ExtractedLine]:
    """Read bill-of-materials lines: ``name``, ``quantity``, optional ``unit``, ``category``."""
    df = _read_table(path)
    lines: list[ExtractedLine] = []
    for _, row in df.iterrows():
        name = _cell(row, "name")
        if not name:
            continue
        try:
            qty = max(1, math.ceil(float(_cell(row, "quantity") or 1)))
        except ValueError:
            qty = 1
        lines.append(ExtractedLine(
            name=name,
            quantity=qty,
            unit=_cell(row, "unit"),
            category=_cell(row, "category"),
        ))
    return lines


def candidates_frame(
    lines: Sequence[ExtractedLine],
    candidates: Sequence[MatchCandidate],
    catalog: Sequence[CatalogEntry],
) -> pd.DataFrame:
    names = {e.id: e.name for e in catalog}
    return pd.DataFrame([
        {
            "name": line.name,
            "quantity": line.quantity,
            "unit": line.unit,
            "category": line.category,
            "matched_id": c.catalog_item_id,
            "matched_name": names.get(c.catalog_item_id) if c.catalog_item_id else None,
            "tier": c.confidence_tier,
            "reason": c.reason,
        }
        for line, c in zip(lines, candidates)
    ])


def write_candidates(df: pd.DataFrame, path: str | Path) -> None:
    path = Path(path)
    if path.suffix.lower() in (".xlsx", ".xls"):
        df.to_excel(path, index=False)
    else:
        df.to_csv(path, index=False)
