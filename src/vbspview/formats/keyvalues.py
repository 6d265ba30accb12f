"""
Valve KeyValues text parser (VMT materials).

Supported subset:
- quoted and bare tokens, `{` / `}` blocks
- `//` line comments (outside quoted strings)
- platform conditionals (`"key" "value" [$X360]`): console-only entries are dropped
- keys are case-insensitive; a repeated key overrides the earlier value in place
"""

from __future__ import annotations

from collections.abc import MutableMapping
from typing import Iterator, Union

from vbspview.errors import KeyValuesError

KVValue = Union[str, "KeyValues"]

_TOK_STR = "str"
_TOK_OPEN = "{"
_TOK_CLOSE = "}"
_TOK_COND = "cond"

# Conditionals that never hold on a desktop build.
_CONSOLE_CONDITIONS = {"$x360", "$ps3", "$gameconsole", "$osx", "$posix", "$linux"}


class KeyValues(MutableMapping[str, KVValue]):
    """Ordered, case-insensitive table of string or nested-table values."""

    def __init__(self, items: list[tuple[str, KVValue]] | None = None) -> None:
        self._data: dict[str, tuple[str, KVValue]] = {}
        for k, v in items or []:
            self[k] = v

    def __getitem__(self, key: str) -> KVValue:
        return self._data[key.casefold()][1]

    def __setitem__(self, key: str, value: KVValue) -> None:
        cf = key.casefold()
        prev = self._data.get(cf)
        # Keep the first spelling of the key; replace the value in place.
        self._data[cf] = (prev[0] if prev else key, value)

    def __delitem__(self, key: str) -> None:
        del self._data[key.casefold()]

    def __iter__(self) -> Iterator[str]:
        return (orig for orig, _ in self._data.values())

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.casefold() in self._data

    def __repr__(self) -> str:
        return f"KeyValues({dict(self.items())!r})"

    def copy(self) -> "KeyValues":
        return KeyValues(list(self.items()))

    def first(self) -> tuple[str, KVValue]:
        for orig, value in self._data.values():
            return orig, value
        raise KeyValuesError("empty KeyValues document")

    def get_str(self, key: str) -> str | None:
        v = self.get(key)
        if not isinstance(v, str):
            return None
        v = v.strip()
        return v or None

    def get_float(self, key: str) -> float | None:
        v = self.get_str(key)
        if v is None:
            return None
        try:
            return float(v)
        except ValueError:
            return None

    def get_bool(self, key: str) -> bool:
        v = self.get_str(key)
        if v is None:
            return False
        t = v.casefold()
        if t in ("1", "true", "yes", "on"):
            return True
        try:
            return float(t) != 0.0
        except ValueError:
            return False

    def get_table(self, key: str) -> "KeyValues | None":
        v = self.get(key)
        return v if isinstance(v, KeyValues) else None


def tokenize(text: str) -> list[tuple[str, str]]:
    out: list[tuple[str, str]] = []
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c.isspace():
            i += 1
            continue
        if c == "/" and i + 1 < n and text[i + 1] == "/":
            nl = text.find("\n", i)
            i = n if nl < 0 else nl + 1
            continue
        if c == "{":
            out.append((_TOK_OPEN, c))
            i += 1
            continue
        if c == "}":
            out.append((_TOK_CLOSE, c))
            i += 1
            continue
        if c == '"':
            j = text.find('"', i + 1)
            if j < 0:
                # Unterminated string: take the rest of the line.
                nl = text.find("\n", i + 1)
                j = n if nl < 0 else nl
                out.append((_TOK_STR, text[i + 1 : j]))
                i = j
                continue
            out.append((_TOK_STR, text[i + 1 : j]))
            i = j + 1
            continue
        if c == "[":
            j = text.find("]", i + 1)
            if j < 0:
                raise KeyValuesError(f"unterminated conditional at offset {i}")
            out.append((_TOK_COND, text[i + 1 : j].strip()))
            i = j + 1
            continue
        j = i
        while j < n and not text[j].isspace() and text[j] not in '{}"':
            j += 1
        out.append((_TOK_STR, text[i:j]))
        i = j
    return out


def _condition_holds(cond: str) -> bool:
    c = cond.strip().casefold()
    negate = c.startswith("!")
    if negate:
        c = c[1:].strip()
    holds = c not in _CONSOLE_CONDITIONS
    return not holds if negate else holds


def _skip_condition(toks: list[tuple[str, str]], i: int) -> tuple[int, bool]:
    if i < len(toks) and toks[i][0] == _TOK_COND:
        return i + 1, _condition_holds(toks[i][1])
    return i, True


def _parse_block(toks: list[tuple[str, str]], i: int, *, nested: bool) -> tuple[KeyValues, int]:
    table = KeyValues()
    while i < len(toks):
        kind, text = toks[i]
        if kind == _TOK_CLOSE:
            if not nested:
                raise KeyValuesError("unexpected '}' at top level")
            return table, i + 1
        if kind != _TOK_STR:
            raise KeyValuesError(f"expected key, got {text!r}")
        key = text
        i += 1
        if i >= len(toks):
            raise KeyValuesError(f"missing value for key {key!r}")
        # Conditional may sit between the key and a block: "key" [$X360] { ... }
        i, keep = _skip_condition(toks, i)
        if i >= len(toks):
            raise KeyValuesError(f"missing value for key {key!r}")
        kind, text = toks[i]
        if kind == _TOK_OPEN:
            child, i = _parse_block(toks, i + 1, nested=True)
            i, keep_after = _skip_condition(toks, i)
            if keep and keep_after:
                table[key] = child
            continue
        if kind != _TOK_STR:
            raise KeyValuesError(f"unexpected {text!r} after key {key!r}")
        i, keep_after = _skip_condition(toks, i + 1)
        if keep and keep_after:
            table[key] = text
    if nested:
        raise KeyValuesError("unterminated block")
    return table, i


def parse_keyvalues(text: str) -> KeyValues:
    """Parse a KeyValues document into its top-level table."""
    if text.startswith("\ufeff"):
        text = text[1:]
    table, _ = _parse_block(tokenize(text), 0, nested=False)
    return table
