"""Best-effort decoding of loosely formatted LLM output into typed records.

The generation backend is asked for JSON but does not always deliver it:
answers arrive wrapped in markdown fences, followed by commentary, with raw
newlines inside string values, curly quotes or trailing commas. ``decode``
walks a fixed ladder of increasingly forgiving strategies and stops at the
first one that yields a value:

1. strip code fences
2. strict ``json.loads``
3. first balanced top-level ``{...}`` span, strict parse
4. character-level sanitisation, strict parse
5. per-field regex extraction
6. deterministic minimal record

Whatever tier succeeds, the value is conformed to its ``FragmentShape`` so
callers never branch on failure, only on emptiness of individual fields.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from tenderintel.errors import DecodeFailure

log = logging.getLogger(__name__)

FALLBACK_CONTENT = "<extraction failed>"

Fragment = dict[str, Any]


@dataclass(frozen=True)
class FragmentShape:
    """Expected shape of one decoded fragment.

    ``text_fields`` hold scalars (usually strings), ``list_fields`` hold
    collections. ``content`` is always part of the record.
    """
    name: str
    text_fields: tuple[str, ...] = ("content",)
    list_fields: tuple[str, ...] = ()

    @property
    def scalar_fields(self) -> tuple[str, ...]:
        if "content" in self.text_fields:
            return self.text_fields
        return ("content", *self.text_fields)

    def minimal(self, content: str = FALLBACK_CONTENT) -> Fragment:
        record: Fragment = {f: "" for f in self.scalar_fields}
        record["content"] = content
        for f in self.list_fields:
            record[f] = []
        return record


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*[ \t]*\n?(.*?)(?:```|$)", re.DOTALL)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_UNESCAPE_RE = re.compile(r'\\(["\\/nrt])')
_UNESCAPE = {'"': '"', "\\": "\\", "/": "/", "n": "\n", "r": "\r", "t": "\t"}
_SMART_QUOTES = str.maketrans({
    "“": '"', "”": '"', "„": '"', "‟": '"',
    "‘": "'", "’": "'", "‚": "'", "‛": "'",
})
_IN_STRING_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}
# A quote only closes a string when the next significant character could follow one.
_STRING_TERMINATORS = frozenset({",", "}", "]", ":", ""})


def _to_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        return raw
    return json.dumps(raw, ensure_ascii=False, default=str)


def strip_fences(text: str) -> str:
    """Remove a wrapping markdown code fence, if any."""
    stripped = text.strip()
    m = _FENCE_RE.search(stripped)
    if not m:
        return stripped
    inner = m.group(1).strip()
    if stripped.startswith("```") or (inner and inner[0] in "{["):
        return inner
    return stripped


def find_balanced_span(text: str, opener: str = "{") -> str | None:
    """Return the first balanced ``{...}`` (or ``[...]``) span, string-aware."""
    closer = "}" if opener == "{" else "]"
    start = text.find(opener)
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _iter_object_spans(text: str):
    pos = 0
    while True:
        start = text.find("{", pos)
        if start == -1:
            return
        span = find_balanced_span(text[start:])
        if span is None:
            return
        yield span
        pos = start + len(span)


def _next_significant(text: str, index: int) -> str:
    while index < len(text):
        ch = text[index]
        if not ch.isspace():
            return ch
        index += 1
    return ""


def _repair_strings(text: str) -> str:
    """Escape raw line breaks, tabs and stray quotes found inside string literals."""
    out: list[str] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if not in_string:
            out.append(ch)
            if ch == '"':
                in_string = True
            continue
        if escaped:
            out.append(ch)
            escaped = False
        elif ch == "\\":
            out.append(ch)
            escaped = True
        elif ch == '"':
            if _next_significant(text, i + 1) in _STRING_TERMINATORS:
                in_string = False
                out.append(ch)
            else:
                out.append('\\"')
        else:
            out.append(_IN_STRING_ESCAPES.get(ch, ch))
    return "".join(out)


def sanitize(text: str) -> str:
    """Character-level cleanup applied before the last strict parse."""
    text = _CONTROL_RE.sub("", text).translate(_SMART_QUOTES)
    text = _repair_strings(text)
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def _unescape(value: str) -> str:
    return _UNESCAPE_RE.sub(lambda m: _UNESCAPE[m.group(1)], value).strip()


def _strict(text: str | None, accept: Callable[[Any], bool]) -> Any:
    if not text:
        raise DecodeFailure("empty input")
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError) as exc:
        raise DecodeFailure(str(exc)) from exc
    if not accept(value):
        raise DecodeFailure(f"unexpected top-level type {type(value).__name__}")
    return value


def _first_parse(candidates: list[tuple[str, Callable[[], str | None]]],
                 accept: Callable[[Any], bool]) -> tuple[str, Any] | None:
    for tier, produce in candidates:
        try:
            return tier, _strict(produce(), accept)
        except DecodeFailure:
            continue
    return None


# ---------------------------------------------------------------------------
# Field-level extraction (last resort)
# ---------------------------------------------------------------------------


def _extract_scalar(text: str, field: str) -> Any:
    key = re.escape(field)
    m = re.search(
        rf'"{key}"\s*:\s*"(.*?)"\s*(?=,\s*"[^"\n]+"\s*:|\s*[}}\]]|\s*$)', text, re.DOTALL,
    )
    if m:
        return _unescape(m.group(1))
    m = re.search(rf'"{key}"\s*:\s*(-?\d+(?:\.\d+)?|true|false)', text)
    if m:
        return json.loads(m.group(1))
    # Unterminated string: take the rest of the line.
    m = re.search(rf'"{key}"\s*:\s*"([^"\n]+)', text)
    if m:
        return _unescape(m.group(1))
    return None


def _salvage_objects(text: str) -> list[Fragment]:
    items: list[Fragment] = []
    for span in _iter_object_spans(text):
        for candidate in (span, sanitize(span)):
            try:
                items.append(_strict(candidate, lambda v: isinstance(v, dict)))
                break
            except DecodeFailure:
                continue
        else:
            # Broken wrapper object: look for intact objects nested inside it.
            items.extend(_salvage_objects(span[1:-1]))
    return items


def _extract_list(text: str, field: str) -> list[Any] | None:
    m = re.search(rf'"{re.escape(field)}"\s*:\s*(?=\[)', text)
    if not m:
        return None
    span = find_balanced_span(text[m.end():], "[")
    if span is None:
        return None
    for candidate in (span, sanitize(span)):
        try:
            return _strict(candidate, lambda v: isinstance(v, list))
        except DecodeFailure:
            continue
    return _salvage_objects(span)


def extract_fields(text: str, shape: FragmentShape) -> Fragment | None:
    """Search for each named field independently; ``None`` if nothing was found."""
    found: Fragment = {}
    for field in shape.scalar_fields:
        value = _extract_scalar(text, field)
        if value is not None:
            found[field] = value
    for field in shape.list_fields:
        items = _extract_list(text, field)
        if items is not None:
            found[field] = items
    return found or None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def conform(value: Fragment, shape: FragmentShape) -> Fragment:
    """Fill every declared field; unknown keys are kept untouched."""
    record = dict(value)
    for field in shape.scalar_fields:
        if record.get(field) is None:
            record[field] = ""
    for field in shape.list_fields:
        if not isinstance(record.get(field), list):
            record[field] = []
    return record


def _is_object(value: Any) -> bool:
    return isinstance(value, dict)


def decode(raw: Any, shape: FragmentShape) -> Fragment:
    """Decode *raw* into a record of *shape*. Never raises."""
    if isinstance(raw, dict):
        return conform(raw, shape)
    try:
        text = strip_fences(_to_text(raw))
        parsed = _first_parse([
            ("strict", lambda: text),
            ("span", lambda: find_balanced_span(text)),
            ("sanitized", lambda: sanitize(text)),
            ("sanitized-span", lambda: find_balanced_span(sanitize(text))),
        ], _is_object)
        if parsed is not None:
            tier, value = parsed
            if tier != "strict":
                log.debug("Decoded %s via %s tier", shape.name, tier)
            return conform(value, shape)

        extracted = extract_fields(text, shape)
        if extracted is not None:
            log.info("Decoded %s via field extraction (%s)", shape.name, ", ".join(extracted))
            return conform(extracted, shape)
    except Exception as exc:
        log.warning("Decoder error for %s: %s", shape.name, exc)

    log.warning("Could not decode %s output, using minimal record", shape.name)
    return shape.minimal()


def decode_list(raw: Any, key_hint: str | None = None) -> list[Fragment]:
    """Decode a JSON array of objects. Never raises; returns ``[]`` on total failure.

    A top-level object is accepted too: the list under *key_hint* (or the
    first list-of-objects value) is used.
    """
    def _unwrap(value: Any) -> list[Any] | None:
        if isinstance(value, list):
            return value
        if isinstance(value, dict):
            if key_hint and isinstance(value.get(key_hint), list):
                return value[key_hint]
            for v in value.values():
                if isinstance(v, list) and v and isinstance(v[0], dict):
                    return v
        return None

    if isinstance(raw, (list, dict)):
        items = _unwrap(raw) or []
        return [i for i in items if isinstance(i, dict)]

    try:
        text = strip_fences(_to_text(raw))
        parsed = _first_parse([
            ("strict", lambda: text),
            ("span", lambda: find_balanced_span(text, "[")),
            ("sanitized", lambda: sanitize(text)),
            ("sanitized-span", lambda: find_balanced_span(sanitize(text), "[")),
        ], lambda v: _unwrap(v) is not None)
        if parsed is not None:
            return [i for i in _unwrap(parsed[1]) or [] if isinstance(i, dict)]
        salvaged = _salvage_objects(text)
        if salvaged:
            log.info("Salvaged %d objects from malformed array", len(salvaged))
        return salvaged
    except Exception as exc:
        log.warning("Decoder error for list output: %s", exc)
        return []
