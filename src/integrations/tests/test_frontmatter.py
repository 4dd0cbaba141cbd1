"""Tests for the frontmatter parser and serializer."""

from __future__ import annotations

import textwrap

import pytest

from src.integrations.errors import FrontmatterError
from src.integrations.frontmatter import (
    dump_frontmatter,
    parse_frontmatter,
    parse_inline,
    split_document,
)

DOCUMENT = textwrap.dedent(
    """\
    ---
    date: 2026-01-26
    mood: 7  # out of 10
    tags: [legs, "long run"]
    whoop:
      sleep:
        duration_minutes: 452
        score: 91.0
        stages: {rem: 95, deep: 88, light: 240, awake: 29}
      workouts:
        - id: "9001"
          type: Running
        - {id: "9002", type: Cycling, calories: 310}
    ---
    # 2026-01-26

    Freeform notes.
    """
)


class TestSplit:
    def test_no_frontmatter(self) -> None:
        assert split_document("# Title\n\nBody\n") == (None, "# Title\n\nBody\n")
        assert parse_frontmatter("# Title\n") == ({}, "# Title\n")

    def test_body_is_returned_verbatim(self) -> None:
        body = "# Day\n\n---\n\ntrailing spaces   \n\n\n"
        header, parsed_body = split_document(f"---\na: 1\n---\n{body}")
        assert header == "a: 1\n"
        assert parsed_body == body

    def test_unterminated_header(self) -> None:
        with pytest.raises(FrontmatterError):
            split_document("---\na: 1\nno closing line\n")


class TestParse:
    def test_full_document(self) -> None:
        header, body = parse_frontmatter(DOCUMENT)

        assert header["date"] == "2026-01-26"
        assert header["mood"] == 7
        assert header["tags"] == ["legs", "long run"]
        sleep = header["whoop"]["sleep"]
        assert sleep["duration_minutes"] == 452
        assert sleep["score"] == 91.0
        assert sleep["stages"] == {"rem": 95, "deep": 88, "light": 240, "awake": 29}
        assert header["whoop"]["workouts"] == [
            {"id": "9001", "type": "Running"},
            {"id": "9002", "type": "Cycling", "calories": 310},
        ]
        assert body == "# 2026-01-26\n\nFreeform notes.\n"

    def test_sequence_at_parent_indent(self) -> None:
        header, _ = parse_frontmatter("---\nitems:\n- 1\n- two\n---\n")
        assert header == {"items": [1, "two"]}

    def test_empty_values(self) -> None:
        header, _ = parse_frontmatter("---\nempty:\nnone: null\ntilde: ~\nmap: {}\nlist: []\n---\n")
        assert header == {"empty": None, "none": None, "tilde": None, "map": {}, "list": []}

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("true", True),
            ("False", False),
            ("-12", -12),
            ("3.25", 3.25),
            ("1e3", 1000.0),
            ("plain words", "plain words"),
            ("'it''s'", "it's"),
            ('"tab\\tand \\"quote\\""', 'tab\tand "quote"'),
            ('"# not a comment"', "# not a comment"),
            ("value # comment", "value"),
            ("[1, [2, 3], {a: b}]", [1, [2, 3], {"a": "b"}]),
            ('{"key with space": "2026-01-27T03:00:00+00:00"}', {"key with space": "2026-01-27T03:00:00+00:00"}),
        ],
    )
    def test_inline_values(self, text: str, expected: object) -> None:
        assert parse_inline(text) == expected

    @pytest.mark.parametrize(
        "header",
        [
            "a: 1\na: 2\n",
            "a: 1\n   b: 2\n",
            "a:\n\t b: 1\n",
            "- 1\n- 2\n",
            "a: [1, 2\n",
            "a: {b 1}\n",
            "a: &anchor 1\n",
            "a: 'unterminated\n",
            "just text\n",
        ],
    )
    def test_malformed_headers(self, header: str) -> None:
        with pytest.raises(FrontmatterError):
            parse_frontmatter(f"---\n{header}---\nbody\n")

    def test_error_carries_line_number(self) -> None:
        with pytest.raises(FrontmatterError) as exc_info:
            parse_frontmatter("---\na: 1\na: 2\n---\n")
        assert exc_info.value.line == 3


class TestDump:
    def test_dump_then_parse_restores_values(self) -> None:
        data = {
            "date": "2026-01-26",
            "whoop": {
                "sleep": {
                    "id": "ecfc6a15",
                    "start_time": "2026-01-27T03:00:00+00:00",
                    "duration_minutes": 450,
                    "score": 91.0,
                    "stages": {"rem": 95, "deep": 88},
                },
                "workouts": [
                    {"id": "9001", "type": "Running", "strain": 12.4},
                    {"id": "abc", "type": "Functional Fitness", "calories": 500},
                ],
                "flags": [True, False],
            },
        }
        text = dump_frontmatter(data, "# Body\n")
        assert parse_frontmatter(text) == (data, "# Body\n")

    def test_none_entries_are_dropped(self) -> None:
        text = dump_frontmatter({"a": 1, "b": None, "c": {"d": None}}, "")
        assert parse_frontmatter(text)[0] == {"a": 1, "c": {}}

    @pytest.mark.parametrize(
        "value",
        ["true", "null", "123", "4.5", "", " padded", "a: b", "#tag", "- item", "[x]", "it's", 'say "hi"', "line\nbreak"],
    )
    def test_ambiguous_strings_survive(self, value: str) -> None:
        text = dump_frontmatter({"key": value, "items": [value]}, "")
        assert parse_frontmatter(text)[0] == {"key": value, "items": [value]}

    def test_plain_strings_stay_unquoted(self) -> None:
        text = dump_frontmatter({"date": "2026-01-26", "type": "Running"}, "")
        assert text == "---\ndate: 2026-01-26\ntype: Running\n---\n"

    def test_non_finite_float_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            dump_frontmatter({"a": float("nan")}, "")


LINE_BREAKING_CHARS = ["\x0b", "\x0c", "\x1c", "\x1d", "\x1e", "\x85", "\u2028", "\u2029", "\r"]


class TestUnicodeLineBreaks:
    @pytest.mark.parametrize("char", LINE_BREAKING_CHARS)
    def test_vendor_strings_round_trip(self, char: str) -> None:
        value = f"a{char}b"
        data = {"whoop": {"workouts": [{"id": "1", "type": value}], "note": value}}

        text = dump_frontmatter(data, "# 2026-01-26\n")

        assert parse_frontmatter(text) == (data, "# 2026-01-26\n")

    @pytest.mark.parametrize("char", LINE_BREAKING_CHARS)
    def test_written_header_has_one_entry_per_line(self, char: str) -> None:
        text = dump_frontmatter({"type": f"{char}x{char}"}, "")
        assert text.splitlines() == ["---", text.split("\n")[1], "---"]

    def test_crlf_header(self) -> None:
        text = "---\r\ndate: 2026-01-26\r\nwhoop:\r\n  score: 91\r\n---\r\nBody\r\n"
        assert parse_frontmatter(text) == ({"date": "2026-01-26", "whoop": {"score": 91}}, "Body\r\n")

    def test_separator_in_body_is_kept(self) -> None:
        body = "Notes\u2028still notes\n"
        assert parse_frontmatter(f"---\na: 1\n---\n{body}") == ({"a": 1}, body)
