"""
Compile access-log templates and match lines against them.

A template mixes literal text with ``$name`` placeholders, for example the
nginx combined format::

    $remote_addr - $remote_user [$time_local] "$request" $status $body_bytes_sent

``compile_format`` turns it into a FormatPlan once at startup. The plan's
literals act as anchors: a field runs up to the first occurrence of the next
literal's first character, which is the closing quote or bracket for quoted
and bracketed fields. Embedded delimiters are not escaped, so a request line
containing a ``"`` stops the field early and usually makes the line fail.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterator, Mapping, Tuple, Union

from tailpoint.errors import ConfigError, FieldError, ParseError

SIGIL = "$"


def _is_ident_char(ch: str) -> bool:
    return ch == "_" or ch.isascii() and ch.isalnum()


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Field:
    name: str


FormatToken = Union[Literal, Field]


class ParsedEntry(Mapping[str, str]):
    """Field values extracted from one line."""

    def __init__(self, values: Dict[str, str]):
        self._values = values

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ParsedEntry({self._values!r})"

    def field(self, name: str) -> str:
        try:
            return self._values[name]
        except KeyError:
            raise FieldError(name, "not present in entry") from None

    def float_field(self, name: str) -> float:
        raw = self.field(name)
        try:
            value = float(raw)
        except ValueError:
            raise FieldError(name, "not a number", raw) from None
        if not math.isfinite(value):
            raise FieldError(name, "not a finite number", raw)
        return value


@dataclass(frozen=True)
class FormatPlan:
    template: str
    tokens: Tuple[FormatToken, ...]

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(t.name for t in self.tokens if isinstance(t, Field))

    def match(self, line: str) -> ParsedEntry:
        """Extract field values from ``line`` or raise ParseError."""
        text = line.rstrip("\r\n")
        values: Dict[str, str] = {}
        pos = 0
        tokens = self.tokens
        for i, tok in enumerate(tokens):
            if isinstance(tok, Literal):
                if not text.startswith(tok.text, pos):
                    if len(text) - pos < len(tok.text):
                        raise ParseError(line, f"line ended before literal {tok.text!r}", pos)
                    raise ParseError(line, f"expected literal {tok.text!r}", pos)
                pos += len(tok.text)
                continue

            if i + 1 == len(tokens):
                values[tok.name] = text[pos:]
                pos = len(text)
                continue

            # compile_format guarantees a Literal follows every non-final Field
            boundary = tokens[i + 1].text[0]
            end = text.find(boundary, pos)
            if end < 0:
                raise ParseError(
                    line, f"line ended before {boundary!r} closing field {tok.name!r}", len(text)
                )
            values[tok.name] = text[pos:end]
            pos = end

        if pos != len(text):
            raise ParseError(line, "unexpected trailing text", pos)
        return ParsedEntry(values)


def compile_format(template: str) -> FormatPlan:
    """Compile a ``$name`` template into a FormatPlan.

    Raises ConfigError for an empty template, a dangling ``$``, two adjacent
    placeholders, or a field declared twice.
    """
    if not template:
        raise ConfigError("log format must not be empty")

    tokens = []
    seen = set()
    literal = []
    i = 0
    n = len(template)
    while i < n:
        ch = template[i]
        if ch != SIGIL:
            literal.append(ch)
            i += 1
            continue

        start = i + 1
        j = start
        while j < n and _is_ident_char(template[j]):
            j += 1
        if j == start:
            raise ConfigError(f"log format: {SIGIL!r} at position {i} is not followed by a field name")

        if literal:
            tokens.append(Literal("".join(literal)))
            literal = []
        elif tokens and isinstance(tokens[-1], Field):
            raise ConfigError(
                f"log format: fields {tokens[-1].name!r} and {template[start:j]!r} "
                "must be separated by literal text"
            )

        name = template[start:j]
        if name in seen:
            raise ConfigError(f"log format: field {name!r} is declared more than once")
        seen.add(name)
        tokens.append(Field(name))
        i = j

    if literal:
        tokens.append(Literal("".join(literal)))
    return FormatPlan(template=template, tokens=tuple(tokens))
