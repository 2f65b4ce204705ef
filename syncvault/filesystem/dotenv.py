"""Lossless ``KEY=VALUE`` document model for ``.env`` files.

Every physical line is kept as a typed record whose fields concatenate back
to the original text, so an unmodified document serializes byte for byte.
The only normalization is ``\\r\\n`` -> ``\\n`` on parse; it is one-way.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_LINE_RE = re.compile(r"(\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*=\s*)(.*)")
_KEY_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass(frozen=True)
class BlankLine:
    """An empty or whitespace-only line."""

    raw: str


@dataclass(frozen=True)
class CommentLine:
    """A line whose first non-whitespace character is ``#``."""

    raw: str


@dataclass(frozen=True)
class UnparsedLine:
    """A line outside the ``KEY=VALUE`` grammar, passed through verbatim."""

    raw: str


@dataclass(frozen=True)
class KeyValueLine:
    """A ``KEY=VALUE`` line split into its exact textual parts.

    ``prefix + key + separator + value + trailing_whitespace + comment``
    is the raw line.
    """

    prefix: str
    key: str
    separator: str
    value: str
    trailing_whitespace: str = ""
    comment: str = ""

    @property
    def raw(self) -> str:
        return (
            f"{self.prefix}{self.key}{self.separator}"
            f"{self.value}{self.trailing_whitespace}{self.comment}"
        )


ConfigLine = BlankLine | CommentLine | UnparsedLine | KeyValueLine


@dataclass
class ConfigDocument:
    """Ordered lines plus whether the source ended with a newline."""

    lines: list[ConfigLine] = field(default_factory=list)
    ends_with_newline: bool = False

    def key_value_lines(self) -> list[KeyValueLine]:
        return [line for line in self.lines if isinstance(line, KeyValueLine)]

    def keys(self) -> list[str]:
        """Return the distinct keys in document order."""
        seen: dict[str, None] = {}
        for line in self.key_value_lines():
            seen.setdefault(line.key, None)
        return list(seen)


def split_inline_comment(value_raw: str) -> tuple[str, str]:
    """Split a value remainder at the first unquoted, unescaped ``#``.

    Returns ``(value_part, comment_part)``; ``comment_part`` starts with ``#``
    or is empty.
    """
    in_single = False
    in_double = False
    escaped = False
    for index, char in enumerate(value_raw):
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == "'" and not in_double:
            in_single = not in_single
            continue
        if char == '"' and not in_single:
            in_double = not in_double
            continue
        if char == "#" and not in_single and not in_double:
            return value_raw[:index], value_raw[index:]
    return value_raw, ""


def parse_line(line: str) -> ConfigLine:
    """Classify a single line (without its newline)."""
    if line.strip() == "":
        return BlankLine(line)
    if line.lstrip().startswith("#"):
        return CommentLine(line)

    match = _LINE_RE.fullmatch(line)
    if match is None:
        return UnparsedLine(line)
    prefix, key, separator, value_raw = match.groups()
    if not _KEY_RE.fullmatch(key):
        return UnparsedLine(line)

    value_part, comment = split_inline_comment(value_raw)
    value = value_part.rstrip()
    return KeyValueLine(
        prefix=prefix,
        key=key,
        separator=separator,
        value=value,
        trailing_whitespace=value_part[len(value) :],
        comment=comment,
    )


def parse(text: str) -> ConfigDocument:
    """Parse dotenv text into a lossless document. Never raises."""
    normalized = text.replace("\r\n", "\n")
    ends_with_newline = normalized.endswith("\n")
    body = normalized[:-1] if ends_with_newline else normalized
    if body == "" and not ends_with_newline:
        return ConfigDocument(lines=[], ends_with_newline=False)
    return ConfigDocument(
        lines=[parse_line(line) for line in body.split("\n")],
        ends_with_newline=ends_with_newline,
    )


def serialize(document: ConfigDocument) -> str:
    """Reassemble a document into text."""
    text = "\n".join(line.raw for line in document.lines)
    if document.ends_with_newline:
        text += "\n"
    return text
