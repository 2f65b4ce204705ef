"""Secret extraction, template rendering and hydration.

A template is a dotenv document whose secret values were replaced by
``{{SYNCVAULT:<KEY>}}`` placeholders. Hydration is plain text substitution so
a file can be rebuilt from a template and a secret blob without re-parsing.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import TYPE_CHECKING

from syncvault.filesystem.dotenv import ConfigDocument, KeyValueLine

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

PLACEHOLDER_PREFIX = "SYNCVAULT"
SECRET_MARKER = "!SYNCVAULT"

SECRET_NAME_TOKENS: tuple[str, ...] = (
    "SECRET",
    "TOKEN",
    "PASSWORD",
    "PASS",
    "API_KEY",
    "PRIVATE_KEY",
    "KEY",
)

_PLACEHOLDER_RE = re.compile(r"\{\{" + PLACEHOLDER_PREFIX + r":([A-Za-z_][A-Za-z0-9_]*)\}\}")


def make_placeholder(key: str) -> str:
    return f"{{{{{PLACEHOLDER_PREFIX}:{key}}}}}"


def is_likely_secret_key(key: str) -> bool:
    """Return True if the key name looks like it holds a secret."""
    upper = key.upper()
    return any(token in upper for token in SECRET_NAME_TOKENS)


def extract_secret_marker(value: str) -> tuple[str, bool]:
    """Strip a trailing ``!SYNCVAULT`` marker (case-insensitive).

    Returns ``(value_without_marker, has_marker)``. Whitespace between the
    value and the marker is dropped with it; a value without the marker is
    returned unchanged.
    """
    trimmed = value.rstrip()
    if not trimmed.upper().endswith(SECRET_MARKER.upper()):
        return value, False
    return trimmed[: len(trimmed) - len(SECRET_MARKER)].rstrip(), True


def has_secret_marker(value: str) -> bool:
    return extract_secret_marker(value)[1]


def collect_marker_keys(document: ConfigDocument) -> set[str]:
    """Return the keys whose values carry the explicit secret marker."""
    return {line.key for line in document.key_value_lines() if has_secret_marker(line.value)}


def classify_secret_keys(
    document: ConfigDocument,
    *,
    use_heuristic: bool = True,
    fallback_to_all: bool = False,
) -> set[str]:
    """Decide which keys of a document are secret.

    A key is secret when its name matches the heuristic or its value carries
    the explicit marker. With ``fallback_to_all`` every key is secret when
    neither signal fires (first-time import without an explicit selection).
    """
    keys = collect_marker_keys(document)
    if use_heuristic:
        keys.update(key for key in document.keys() if is_likely_secret_key(key))
    if not keys and fallback_to_all:
        keys = set(document.keys())
    return keys


def render(
    document: ConfigDocument,
    secret_keys: Iterable[str],
    *,
    keep_empty: bool = False,
) -> tuple[ConfigDocument, dict[str, str]]:
    """Replace secret values with placeholders.

    Returns the template document and the extracted secret map. Line count,
    order and every non-secret line are preserved. Blank secret values are
    left out of the map unless ``keep_empty`` is set, in which case they map
    to ``""`` so an upload lets the placeholder hydrate back to a blank value.
    """
    wanted = set(secret_keys)
    secrets: dict[str, str] = {}
    lines = []
    for line in document.lines:
        if not isinstance(line, KeyValueLine) or line.key not in wanted:
            lines.append(line)
            continue
        value, _ = extract_secret_marker(line.value)
        value = value.strip()
        if value or keep_empty:
            secrets[line.key] = value
        lines.append(replace(line, value=make_placeholder(line.key)))
    return ConfigDocument(lines=lines, ends_with_newline=document.ends_with_newline), secrets


def hydrate(template_text: str, secret_values: Mapping[str, str]) -> str:
    """Substitute placeholders with secret values.

    Placeholders whose key is absent from ``secret_values`` are left in place;
    use ``find_placeholders`` to detect an incomplete result.
    """
    output = template_text
    for key, value in secret_values.items():
        output = output.replace(make_placeholder(key), value)
    return output


def find_placeholders(text: str) -> set[str]:
    """Return the keys of placeholders still present in ``text``."""
    return set(_PLACEHOLDER_RE.findall(text))
