"""Text folding and search-term expansion for catalog lookups."""

from __future__ import annotations

import re
import unicodedata

_WS = re.compile(r"\s+")
_GAUGE = re.compile(r"(?:number|no\.?|#)\s*(\d+)")
_FRACTION = re.compile(r"(\d+)/(\d+)")

# keyword found in the term -> (alternate spellings to search, core component)
_PRODUCT_ALIASES: dict[str, tuple[tuple[str, ...], str | None]] = {
    "emt": (("emt conduit", "electrical metallic tubing", "emt"), "emt"),
    "pvc": (("pvc conduit", "pvc"), "pvc"),
    "mc": (("mc cable", "metal clad", "mc"), "mc"),
    "romex": (("nm cable", "non-metallic", "romex"), "romex"),
    "thhn": (("thhn", "thwn", "thhn wire", "thwn wire"), "thhn"),
    "thwn": (("thhn", "thwn", "thhn wire", "thwn wire"), "thhn"),
    "conduit": (("conduit",), "conduit"),
}


def fold(text: str | None) -> str:
    """Fold text for comparison: NFKC, casefold, trim, collapse whitespace."""
    if not text:
        return ""
    s = unicodedata.normalize("NFKC", text)
    s = s.casefold()
    return _WS.sub(" ", s).strip()


def same_text(a: str | None, b: str | None) -> bool:
    """Case-insensitive equality; two blanks never count as equal."""
    fa, fb = fold(a), fold(b)
    return bool(fa) and fa == fb


def contains_either(a: str, b: str) -> bool:
    """True if either folded string contains the other."""
    fa, fb = fold(a), fold(b)
    if not fa or not fb:
        return False
    return fa in fb or fb in fa


def search_variations(term: str) -> list[str]:
    """Expand a trade search term into the spellings warehouse names tend to use.

    "number 4 wire" also searches "#4" and "4 awg"; "3/4 emt" also searches
    "3/4" and "emt" on their own.
    """
    normalized = fold(term)
    if not normalized:
        return []

    variations: list[str] = [normalized]
    components: list[str] = []

    gauge = _GAUGE.search(normalized)
    if gauge:
        g = gauge.group(1)
        variations.extend([f"#{g}", f"{g} awg", f"number {g}"])
        components.append(g)

    fraction = _FRACTION.search(normalized)
    if fraction:
        frac = f"{fraction.group(1)}/{fraction.group(2)}"
        variations.extend([frac, f'{frac}"'])
        components.append(frac)

    for keyword, (aliases, component) in _PRODUCT_ALIASES.items():
        if keyword in normalized:
            variations.extend(aliases)
            if component and component not in components:
                components.append(component)

    if "wire" in normalized or "cable" in normalized:
        variations.extend(["wire", "cable", "conductor"])

    if len(components) >= 2:
        variations.extend(components)

    # dict.fromkeys keeps first-seen order while dropping repeats
    return list(dict.fromkeys(variations))


def keywords(term: str, min_length: int = 3) -> list[str]:
    """Split a term into searchable keywords, dropping short noise words."""
    return [k for k in fold(term).split(" ") if len(k) >= min_length]
