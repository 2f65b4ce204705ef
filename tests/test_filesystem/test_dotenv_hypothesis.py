"""Property-based tests for dotenv parsing."""

from __future__ import annotations

import string

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from syncvault.filesystem.dotenv import KeyValueLine, parse, serialize

PROPERTY_SETTINGS = settings(
    max_examples=300,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

_KEY = st.from_regex(r"[A-Za-z_][A-Za-z0-9_]{0,12}", fullmatch=True)
_VALUE = st.text(
    alphabet=string.ascii_letters + string.digits + " _-./:'\"#\\=",
    max_size=20,
)
_LINE = st.one_of(
    st.builds(lambda k, v: f"{k}={v}", _KEY, _VALUE),
    st.builds(lambda c: f"# {c}", _VALUE),
    st.sampled_from(["", "   ", "export X=1", "not a pair"]),
)


class TestDotenvProperties:
    @PROPERTY_SETTINGS
    @given(text=st.text(max_size=200))
    def test_serialize_inverts_parse(self, text: str) -> None:
        assert serialize(parse(text)) == text.replace("\r\n", "\n")

    @PROPERTY_SETTINGS
    @given(lines=st.lists(_LINE, max_size=12), final_newline=st.booleans())
    def test_structured_documents_round_trip(self, lines: list[str], final_newline: bool) -> None:
        text = "\n".join(lines) + ("\n" if final_newline and lines else "")
        doc = parse(text)
        assert serialize(doc) == text

    @PROPERTY_SETTINGS
    @given(lines=st.lists(_LINE, max_size=12))
    def test_every_line_is_kept(self, lines: list[str]) -> None:
        # A trailing empty line reads back as the final newline flag.
        if not lines or lines[-1] == "":
            return
        text = "\n".join(lines)
        doc = parse(text)
        assert [line.raw for line in doc.lines] == lines

    @PROPERTY_SETTINGS
    @given(key=_KEY, value=_VALUE)
    def test_key_value_parts_concatenate_to_raw(self, key: str, value: str) -> None:
        raw = f"{key}={value}"
        (line,) = parse(raw).lines
        assert isinstance(line, KeyValueLine)
        assert line.key == key
        assert line.raw == raw
