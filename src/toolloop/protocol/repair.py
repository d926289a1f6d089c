"""
Repair pipeline for near-JSON replies.

Models reliably produce *almost* JSON.  Each rule below is a pure text transform that is safe to
apply twice (the second pass never changes anything).  Rules that fix structure only look at the
text *outside* string literals, so a comma or brace inside an answer string is never touched.
"""

import json
import logging
import re
from typing import (
    Any,
    Callable,
    List,
    Tuple,
)

logger = logging.getLogger(__name__)

RepairRule = Callable[[str], str]


class DocumentParseError(ValueError):
    """Raised when text cannot be read as a JSON document."""


def parse_document(text: str) -> Any:
    """
    Parse *text* as JSON.

    Raw control characters inside strings are tolerated (models like to emit real newlines in
    long answers).
    """
    try:
        return json.loads(text, strict=False)
    except json.JSONDecodeError as exc:
        raise DocumentParseError(str(exc)) from exc


def is_document(text: str) -> bool:
    """Return True if *text* parses as JSON."""
    try:
        parse_document(text)
    except DocumentParseError:
        return False
    return True


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------
def _split_literals(text: str) -> List[Tuple[bool, str]]:
    """
    Split *text* into ``(is_string_literal, chunk)`` pairs.

    String literals keep their quotes.  An unterminated literal runs to the end of the text.
    """
    chunks: List[Tuple[bool, str]] = []
    start = 0
    i = 0
    n = len(text)
    while i < n:
        if text[i] != '"':
            i += 1
            continue
        if i > start:
            chunks.append((False, text[start:i]))
        j = i + 1
        while j < n:
            ch = text[j]
            if ch == "\\":
                j += 2
                continue
            j += 1
            if ch == '"':
                break
        j = min(j, n)
        chunks.append((True, text[i:j]))
        i = start = j
    if start < n:
        chunks.append((False, text[start:]))
    return chunks


def _map_outside_literals(text: str, fn: Callable[[str], str]) -> str:
    return "".join(chunk if quoted else fn(chunk) for quoted, chunk in _split_literals(text))


def _map_inside_literals(text: str, fn: Callable[[str], str]) -> str:
    return "".join(fn(chunk) if quoted else chunk for quoted, chunk in _split_literals(text))


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------
def extract_outer_object(text: str) -> str:
    """Keep the text between the first ``{`` and the last ``}``."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        return text
    return text[start : end + 1]


_BARE_VALUE = re.compile(r"(:\s*)([A-Za-z_][A-Za-z0-9_\-]*)(?=\s*[,}\]])")
_JSON_LITERALS = frozenset({"true", "false", "null", "NaN", "Infinity"})


def _quote_bare_values(chunk: str) -> str:
    def sub(match: "re.Match[str]") -> str:
        token = match.group(2)
        if token in _JSON_LITERALS:
            return match.group(0)
        return f'{match.group(1)}"{token}"'

    return _BARE_VALUE.sub(sub, chunk)


def quote_bare_enum_values(text: str) -> str:
    """Quote identifier-like values after a colon: ``"p": HIGH`` -> ``"p": "HIGH"``."""
    return _map_outside_literals(text, _quote_bare_values)


# JSON escape letters; a doubled backslash in front of one of these is a literal backslash.
_ESCAPE_LETTERS = frozenset('"\\/bfnrt')
_UNICODE_TAIL = re.compile(r"u[0-9a-fA-F]{4}")


def _collapse_in_literal(literal: str) -> str:
    # Only ``\\uXXXX`` collapses.  Collapsing before any other non-escape letter (``\\d``,
    # ``\\s``) would produce an escape JSON rejects, turning a parseable document into a
    # broken one.
    out: List[str] = []
    i = 0
    n = len(literal)
    while i < n:
        ch = literal[i]
        if ch != "\\" or i + 1 >= n:
            out.append(ch)
            i += 1
            continue
        if (
            literal[i + 1] == "\\"
            and i + 2 < n
            and literal[i + 2] not in _ESCAPE_LETTERS
            and _UNICODE_TAIL.match(literal, i + 2)
        ):
            out.append("\\")
        else:
            out.append(literal[i : i + 2])
        i += 2
    return "".join(out)


def collapse_double_escapes(text: str) -> str:
    r"""Turn a doubled ``\\u00e9`` back into the ``é`` escape the model meant."""
    return _map_inside_literals(text, _collapse_in_literal)


_ADJACENT_OBJECTS = re.compile(r"\}\s*\{")


def insert_missing_object_separator(text: str) -> str:
    """``}{`` -> ``},{``."""
    return _map_outside_literals(text, lambda chunk: _ADJACENT_OBJECTS.sub("},{", chunk))


_TRAILING_COMMA = re.compile(r"(?:,\s*)+([}\]])")


def remove_trailing_separators(text: str) -> str:
    """Drop commas right before a closing brace or bracket."""
    return _map_outside_literals(text, lambda chunk: _TRAILING_COMMA.sub(r"\1", chunk))


REPAIR_RULES: Tuple[Tuple[str, RepairRule], ...] = (
    ("extract_outer_object", extract_outer_object),
    ("quote_bare_enum_values", quote_bare_enum_values),
    ("collapse_double_escapes", collapse_double_escapes),
    ("insert_missing_object_separator", insert_missing_object_separator),
    ("remove_trailing_separators", remove_trailing_separators),
)
"""Rules in the order they are applied."""


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------
def repair(text: str) -> str:
    """
    Run every repair rule over *text* in order and return the result.

    Text that already parses is returned untouched.
    """
    if is_document(text):
        return text

    repaired = text
    applied: List[str] = []
    for name, rule in REPAIR_RULES:
        candidate = rule(repaired)
        if candidate != repaired:
            applied.append(name)
            repaired = candidate

    if applied:
        logger.debug("Applied repair rules: %s", ", ".join(applied))
    return repaired
