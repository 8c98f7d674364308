"""Prose extraction from OSCAL part trees.

Two modes share one traversal shape:

  flat        own prose, then every descendant's prose, depth first,
              space-joined (statement, guidance, assessment methods)
  structured  hierarchy-preserving: a part with prose and children becomes
              ``{"header": prose, "items": [...]}``, a prose-only leaf a bare
              string, an empty part nothing, and a container with a single
              contributing child collapses to that child's result

Traversals use explicit stacks, so part depth is bounded only by memory.
Parameter insertion tokens are substituted on the extracted text only.
"""
from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any, Protocol

from controlset.oscal_types import Part

INSERT_PARAM_RE = re.compile(r"\{\{\s*insert:\s*param,\s*([^}]+?)\s*\}\}")

BOILERPLATE_PREFIX = "Determine if"

_ROMAN = {"i": 1, "v": 5, "x": 10, "l": 50, "c": 100}

type Structure = str | dict[str, Any] | list[Any]


class LabelledParameter(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def label(self) -> str | None: ...


# ---------------------------------------------------------------------------
# Parameter substitution
# ---------------------------------------------------------------------------


def resolve_parameter_insertions(
    text: str,
    parameters: Sequence[LabelledParameter] | None,
) -> str:
    """Replace ``{{ insert: param, <id> }}`` with ``[<label>]``.

    A known parameter without a label becomes ``[<id>]``; an unknown id is
    left verbatim.
    """
    if not parameters or "{{" not in text:
        return text
    labels = {p.id: p.label or p.id for p in parameters}

    def _sub(m: re.Match[str]) -> str:
        param_id = m.group(1).strip()
        if param_id not in labels:
            return m.group(0)
        return f"[{labels[param_id]}]"

    return INSERT_PARAM_RE.sub(_sub, text)


def _clean(prose: str | None) -> str:
    return prose.strip() if prose else ""


def map_strings(structure: Any, fn: Any) -> Any:
    """Apply ``fn`` to every string inside a structured extraction."""
    if isinstance(structure, str):
        return fn(structure)
    if isinstance(structure, list):
        return [map_strings(item, fn) for item in structure]
    if isinstance(structure, dict):
        return {"header": fn(structure["header"]), "items": map_strings(structure["items"], fn)}
    return structure


# ---------------------------------------------------------------------------
# Flat mode
# ---------------------------------------------------------------------------


def extract_text(
    part: Part,
    parameters: Sequence[LabelledParameter] | None = None,
    resolve_parameters: bool = False,
) -> str:
    """Flatten a part tree to prose, depth first, left to right."""
    pieces: list[str] = []
    stack: list[Part] = [part]
    while stack:
        node = stack.pop()
        prose = _clean(node.prose)
        if prose:
            pieces.append(prose)
        stack.extend(reversed(node.parts))
    text = " ".join(pieces)
    if resolve_parameters:
        text = resolve_parameter_insertions(text, parameters)
    return text.strip()


# ---------------------------------------------------------------------------
# Structured mode
# ---------------------------------------------------------------------------


def _combine(prose: str, child_results: list[Any]) -> Structure | None:
    items: list[Any] = []
    for result in child_results:
        if result is None:
            continue
        # Prose-less containers with several children contribute their items
        # directly rather than as an extra nesting level.
        if isinstance(result, list):
            items.extend(result)
        else:
            items.append(result)
    if prose:
        if not items:
            return prose
        return {"header": prose, "items": items}
    if not items:
        return None
    if len(items) == 1:
        return items[0]
    return items


def extract_structure(
    part: Part,
    parameters: Sequence[LabelledParameter] | None = None,
    resolve_parameters: bool = False,
) -> Structure | None:
    """Hierarchy-preserving extraction of a part tree."""
    results: dict[int, Structure | None] = {}
    stack: list[tuple[Part, bool]] = [(part, False)]
    while stack:
        node, expanded = stack.pop()
        if not expanded:
            stack.append((node, True))
            for child in reversed(node.parts):
                stack.append((child, False))
            continue
        results[id(node)] = _combine(
            _clean(node.prose), [results.get(id(c)) for c in node.parts]
        )
    structure = results[id(part)]
    if structure is not None and resolve_parameters:
        structure = map_strings(structure, lambda s: resolve_parameter_insertions(s, parameters))
    return structure


def flatten_structure(structure: Structure | None, indent: str = "  ") -> list[str]:
    """Render a structured extraction as strings, indenting nested items."""
    out: list[str] = []
    stack: list[tuple[Any, int]] = [(structure, 0)]
    while stack:
        node, depth = stack.pop()
        if node is None:
            continue
        if isinstance(node, str):
            out.append(f"{indent * depth}{node}")
        elif isinstance(node, list):
            stack.extend((item, depth) for item in reversed(node))
        elif isinstance(node, dict):
            out.append(f"{indent * depth}{node['header']}")
            stack.extend((item, depth + 1) for item in reversed(node["items"]))
    return out


def strip_boilerplate(structure: Structure | None) -> Structure | None:
    """Drop generic ``Determine if ...`` headers, keeping their items."""
    current = structure
    while isinstance(current, dict) and current["header"].startswith(BOILERPLATE_PREFIX):
        items = current["items"]
        current = items[0] if len(items) == 1 else items
    if isinstance(current, list):
        stripped: list[Any] = []
        for item in current:
            if isinstance(item, str) and item.startswith(BOILERPLATE_PREFIX):
                continue
            result = strip_boilerplate(item)
            if isinstance(result, list):
                stripped.extend(result)
            elif result is not None:
                stripped.append(result)
        return stripped
    return current


# ---------------------------------------------------------------------------
# Structural index matching
# ---------------------------------------------------------------------------


def token_ordinal(token: str) -> int | None:
    """Ordinal of an index token: ``a``→1, ``3``→3, ``(b)``→2, ``ii``→2, ``[1]``→1."""
    t = token.strip("()[].").lower()
    if not t:
        return None
    if t.isdigit():
        return int(t)
    if len(t) == 1 and t.isalpha():
        return ord(t) - ord("a") + 1
    if all(ch in _ROMAN for ch in t):
        total = 0
        for i, ch in enumerate(t):
            value = _ROMAN[ch]
            if i + 1 < len(t) and _ROMAN[t[i + 1]] > value:
                total -= value
            else:
                total += value
        return total
    return None


def find_part_by_index(part: Part, tokens: Sequence[str]) -> Part | None:
    """Descend a part tree by position, one index token per level.

    Only contributing (non-empty) children count toward a position. Returns
    None when a token has no ordinal or is out of range.
    """
    current = part
    for token in tokens:
        ordinal = token_ordinal(token)
        if ordinal is None:
            return None
        children = [c for c in current.parts if not c.is_empty]
        if not 1 <= ordinal <= len(children):
            return None
        current = children[ordinal - 1]
    return current


def find_parts(parts: Sequence[Part], names: frozenset[str]) -> list[Part]:
    """Top-level parts whose kind is in ``names``."""
    return [p for p in parts if p.name in names]
