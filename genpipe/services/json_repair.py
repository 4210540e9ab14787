"""Character-level scanner and repair for truncated JSON from model output.

``scan()`` walks the text once, tracking string/escape state, the stack of
open containers, and for every string whether it is an object key or a
value (and under which key). ``repair_truncated()`` uses the final scanner
state to close a value string that was cut off mid-stream and then close
every container left open.

Only a clearly truncated string value of a whitelisted field is repaired;
any other defect is left for the caller to report.
"""

import string
from dataclasses import dataclass, field
from typing import Iterable, Optional

_TRAILING_JUNK = string.whitespace + ",}]"


@dataclass
class _Container:
    kind: str  # "{" or "["
    expect_key: bool = False
    last_key: Optional[str] = None


@dataclass
class ScanState:
    """Scanner state after consuming the whole text."""

    in_string: bool = False
    string_start: int = -1
    string_is_key: bool = False
    string_key: Optional[str] = None
    stack: list[_Container] = field(default_factory=list)
    balanced_error: bool = False

    @property
    def open_containers(self) -> list[str]:
        return [c.kind for c in self.stack]


def scan(text: str) -> ScanState:
    """Run the state machine over ``text``."""
    state = ScanState()
    escape = False

    for i, ch in enumerate(text):
        if state.in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                state.in_string = False
                if state.string_is_key and state.stack:
                    state.stack[-1].last_key = text[state.string_start + 1:i]
            continue

        if ch == '"':
            top = state.stack[-1] if state.stack else None
            state.in_string = True
            state.string_start = i
            state.string_is_key = bool(top and top.kind == "{" and top.expect_key)
            state.string_key = (
                top.last_key if top and top.kind == "{" and not state.string_is_key else None
            )
        elif ch == "{":
            state.stack.append(_Container("{", expect_key=True))
        elif ch == "[":
            state.stack.append(_Container("["))
        elif ch in "}]":
            expected = "{" if ch == "}" else "["
            if not state.stack or state.stack[-1].kind != expected:
                state.balanced_error = True
                continue
            state.stack.pop()
        elif ch == ":":
            if state.stack and state.stack[-1].kind == "{":
                state.stack[-1].expect_key = False
        elif ch == ",":
            if state.stack and state.stack[-1].kind == "{":
                state.stack[-1].expect_key = True

    return state


def ends_in_unterminated_string(text: str) -> bool:
    return scan(text).in_string


def _drop_partial_unicode_escape(value: str) -> str:
    start = value.rfind("\\u")
    if start < 0 or len(value) - start > 5:
        return value
    if any(ch not in string.hexdigits for ch in value[start + 2:]):
        return value
    run = start
    while run > 0 and value[run - 1] == "\\":
        run -= 1
    if (start - run) % 2:
        # The backslash is itself escaped.
        return value
    return value[:start]


def repair_truncated(text: str, truncatable_fields: Iterable[str]) -> Optional[str]:
    """Close a truncated string value and any open containers.

    Args:
        text: JSON text starting at the first ``{``.
        truncatable_fields: Keys whose string values may be re-closed.

    Returns:
        The repaired text, or None when the text does not end inside a
        string value of one of ``truncatable_fields``.
    """
    state = scan(text)
    if not state.in_string or state.string_is_key or state.balanced_error:
        return None
    if state.string_key not in set(truncatable_fields):
        return None

    value = text[state.string_start + 1:].rstrip(_TRAILING_JUNK)
    # A dangling escape would swallow the closing quote.
    trailing_backslashes = len(value) - len(value.rstrip("\\"))
    if trailing_backslashes % 2:
        value = value[:-1]
    # An escape like \u00 cut before its fourth hex digit is invalid too.
    value = _drop_partial_unicode_escape(value)

    closers = "".join("}" if kind == "{" else "]" for kind in reversed(state.open_containers))
    return text[:state.string_start + 1] + value + '"' + closers
