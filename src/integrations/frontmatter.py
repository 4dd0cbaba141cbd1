"""Minimal frontmatter parser and serializer for daily data documents.

A document looks like::

    ---
    date: 2026-01-26
    whoop:
      sleep:
        duration_minutes: 452
        stages: {rem: 95, deep: 88, light: 240, awake: 29}
      workouts:
        - {id: "9001", type: Running, duration_minutes: 45}
    ---
    # 2026-01-26

    Freeform notes the sync code never touches.

The parser is a recursive descent over a stream of indented lines.  Inline
``{...}`` / ``[...]`` values go through a small tokenizer.  It understands
block mappings, block sequences, flow collections, quoted strings and plain
scalars (null, booleans, ints, floats, strings).  Anchors, tags, multi-line
scalars and document streams are not supported and raise FrontmatterError.

``dump_frontmatter`` is a left inverse of ``parse_frontmatter`` for the
values this package writes (dicts, lists, str, int, float, bool).  ``None``
map entries are dropped on write.
"""

from __future__ import annotations

import json
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Iterator

from src.integrations.errors import FrontmatterError

DELIMITER = "---"

_INT_RE = re.compile(r"^[-+]?\d+$")
_FLOAT_RE = re.compile(r"^[-+]?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?$")
_PLAIN_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")
_INDICATORS = set("-?:,[]{}#&*!|>'\"%@`")
_FLOW_PUNCT = set("{}[],:")


# ---------------------------------------------------------------------------
# Document split
# ---------------------------------------------------------------------------


def split_document(text: str) -> tuple[str | None, str]:
    """Split ``text`` into (header, body).

    Header is None when the document has no frontmatter.  The body is
    returned exactly as it appears after the closing delimiter line.
    """
    lines = _physical_lines(text)
    if not lines or lines[0].rstrip("\r\n").rstrip() != DELIMITER:
        return None, text

    for index in range(1, len(lines)):
        if lines[index].rstrip("\r\n").rstrip() == DELIMITER:
            header = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            return header, body

    raise FrontmatterError("unterminated frontmatter block", line=1)


def _physical_lines(text: str) -> list[str]:
    """Split on LF only, keeping line ends.  Other Unicode line breaks stay in the line."""
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def parse_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Parse a document into (header mapping, body)."""
    header, body = split_document(text)
    if header is None:
        return {}, body
    return parse_header(header, first_line=2), body


def dump_frontmatter(data: dict[str, Any], body: str) -> str:
    """Serialize ``data`` as a frontmatter header followed by ``body``."""
    lines: list[str] = []
    _dump_mapping(data, 0, lines)
    header = "".join(line + "\n" for line in lines)
    return f"{DELIMITER}\n{header}{DELIMITER}\n{body}"


# ---------------------------------------------------------------------------
# Block parser
# ---------------------------------------------------------------------------


@dataclass
class _Line:
    number: int
    indent: int
    content: str


def _tokenize_lines(text: str, first_line: int) -> list[_Line]:
    result: list[_Line] = []
    for offset, raw in enumerate(text.split("\n")):
        raw = raw.removesuffix("\r")
        number = first_line + offset
        if "\t" in raw[: len(raw) - len(raw.lstrip())]:
            raise FrontmatterError("tabs are not allowed in indentation", line=number)
        stripped = raw.strip()
        if not stripped or stripped.startswith("#"):
            continue
        result.append(_Line(number, len(raw) - len(raw.lstrip(" ")), stripped))
    return result


class _BlockParser:
    def __init__(self, lines: list[_Line]) -> None:
        self.lines = lines
        self.pos = 0

    def peek(self) -> _Line | None:
        return self.lines[self.pos] if self.pos < len(self.lines) else None

    def parse_document(self) -> dict[str, Any]:
        first = self.peek()
        if first is None:
            return {}
        if _is_sequence_item(first.content):
            raise FrontmatterError("header must be a mapping", line=first.number)
        value = self.parse_mapping(first.indent)
        leftover = self.peek()
        if leftover is not None:
            raise FrontmatterError("unexpected indentation", line=leftover.number)
        return value

    def parse_block(self, indent: int) -> Any:
        line = self.peek()
        assert line is not None
        if _is_sequence_item(line.content):
            return self.parse_sequence(indent)
        return self.parse_mapping(indent)

    def parse_mapping(self, indent: int) -> dict[str, Any]:
        result: dict[str, Any] = {}
        while True:
            line = self.peek()
            if line is None or line.indent < indent:
                return result
            if line.indent > indent:
                raise FrontmatterError("unexpected indentation", line=line.number)
            if _is_sequence_item(line.content):
                return result

            key, rest = _split_key(line.content, line.number)
            if key in result:
                raise FrontmatterError(f"duplicate key {key!r}", line=line.number)
            self.pos += 1

            if rest:
                result[key] = parse_inline(rest, line.number)
                continue

            child = self.peek()
            if child is not None and child.indent > indent:
                result[key] = self.parse_block(child.indent)
            elif child is not None and child.indent == indent and _is_sequence_item(child.content):
                # "key:" followed by "- item" at the same indent
                result[key] = self.parse_sequence(indent)
            else:
                result[key] = None

    def parse_sequence(self, indent: int) -> list[Any]:
        result: list[Any] = []
        while True:
            line = self.peek()
            if line is None or line.indent < indent:
                return result
            if line.indent > indent:
                raise FrontmatterError("unexpected indentation", line=line.number)
            if not _is_sequence_item(line.content):
                return result

            item = line.content[1:].lstrip()
            if not item:
                self.pos += 1
                child = self.peek()
                if child is not None and child.indent > indent:
                    result.append(self.parse_block(child.indent))
                else:
                    result.append(None)
                continue

            if _looks_like_mapping_entry(item):
                # "- key: value" opens a mapping indented past the dash
                item_indent = indent + (len(line.content) - len(item))
                self.lines[self.pos] = _Line(line.number, item_indent, item)
                result.append(self.parse_mapping(item_indent))
                continue

            self.pos += 1
            result.append(parse_inline(item, line.number))


def parse_header(text: str, first_line: int = 1) -> dict[str, Any]:
    """Parse header text (without delimiters) into a mapping."""
    return _BlockParser(_tokenize_lines(text, first_line)).parse_document()


def _is_sequence_item(content: str) -> bool:
    return content == "-" or content.startswith("- ")


def _looks_like_mapping_entry(text: str) -> bool:
    if text[0] in "{[":
        return False
    try:
        _split_key(text, 0)
    except FrontmatterError:
        return False
    return True


def _split_key(content: str, number: int) -> tuple[str, str]:
    """Split ``key: rest`` into its key and the (possibly empty) remainder."""
    if content[0] in "\"'":
        key, end = _read_quoted(content, 0, number)
        remainder = content[end:].lstrip()
        if not remainder.startswith(":"):
            raise FrontmatterError("expected ':' after key", line=number)
        return key, _strip_comment(remainder[1:].strip())

    for index, char in enumerate(content):
        if char == ":" and (index + 1 == len(content) or content[index + 1] == " "):
            key = content[:index].strip()
            if not key:
                break
            return key, _strip_comment(content[index + 1 :].strip())
    raise FrontmatterError(f"expected 'key: value', got {content!r}", line=number)


def _strip_comment(text: str) -> str:
    """Drop a trailing ``# comment`` that sits outside quotes."""
    quote: str | None = None
    index = 0
    while index < len(text):
        char = text[index]
        if quote:
            if char == "\\" and quote == '"':
                index += 1
            elif char == quote:
                quote = None
        elif char in "\"'" and (index == 0 or text[index - 1] in " ,[{:"):
            quote = char
        elif char == "#" and (index == 0 or text[index - 1] == " "):
            return text[:index].rstrip()
        index += 1
    return text


# ---------------------------------------------------------------------------
# Inline values and the flow tokenizer
# ---------------------------------------------------------------------------


@dataclass
class _Token:
    kind: str  # "punct" | "scalar" | "quoted"
    value: str
    column: int


def _read_quoted(text: str, start: int, number: int) -> tuple[str, int]:
    """Read a quoted string starting at ``start``; return (value, end index)."""
    quote = text[start]
    index = start + 1
    if quote == "'":
        chars: list[str] = []
        while index < len(text):
            char = text[index]
            if char == "'":
                if index + 1 < len(text) and text[index + 1] == "'":
                    chars.append("'")
                    index += 2
                    continue
                return "".join(chars), index + 1
            chars.append(char)
            index += 1
        raise FrontmatterError("unterminated single-quoted string", line=number)

    while index < len(text):
        char = text[index]
        if char == "\\":
            index += 2
            continue
        if char == '"':
            literal = text[start : index + 1]
            try:
                return json.loads(literal), index + 1
            except ValueError as exc:
                raise FrontmatterError(f"bad escape in {literal}", line=number) from exc
        index += 1
    raise FrontmatterError("unterminated double-quoted string", line=number)


def _tokenize_flow(text: str, number: int) -> Iterator[_Token]:
    index = 0
    while index < len(text):
        char = text[index]
        if char in " \t":
            index += 1
        elif char in "\"'":
            value, end = _read_quoted(text, index, number)
            yield _Token("quoted", value, index)
            index = end
        elif char in "{}[],":
            yield _Token("punct", char, index)
            index += 1
        elif char == ":" and (index + 1 == len(text) or text[index + 1] in " ,]}"):
            yield _Token("punct", char, index)
            index += 1
        else:
            start = index
            while index < len(text):
                char = text[index]
                if char in "{}[],":
                    break
                if char == ":" and (index + 1 == len(text) or text[index + 1] in " ,]}"):
                    break
                index += 1
            yield _Token("scalar", text[start:index].strip(), start)


class _FlowParser:
    def __init__(self, text: str, number: int) -> None:
        self.tokens = list(_tokenize_flow(text, number))
        self.pos = 0
        self.number = number

    def error(self, message: str) -> FrontmatterError:
        return FrontmatterError(message, line=self.number)

    def peek(self) -> _Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> _Token:
        token = self.peek()
        if token is None:
            raise self.error("unexpected end of inline value")
        self.pos += 1
        return token

    def expect(self, punct: str) -> None:
        token = self.take()
        if token.kind != "punct" or token.value != punct:
            raise self.error(f"expected {punct!r}, got {token.value!r}")

    def at(self, punct: str) -> bool:
        token = self.peek()
        return token is not None and token.kind == "punct" and token.value == punct

    def parse(self) -> Any:
        value = self.parse_value()
        if self.peek() is not None:
            raise self.error(f"trailing content {self.peek().value!r}")
        return value

    def parse_value(self) -> Any:
        token = self.take()
        if token.kind == "quoted":
            return token.value
        if token.kind == "scalar":
            return resolve_scalar(token.value)
        if token.value == "{":
            return self.parse_map()
        if token.value == "[":
            return self.parse_list()
        raise self.error(f"unexpected {token.value!r}")

    def parse_map(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        while not self.at("}"):
            key_token = self.take()
            if key_token.kind == "punct":
                raise self.error(f"expected key, got {key_token.value!r}")
            self.expect(":")
            if self.at(",") or self.at("}"):
                result[key_token.value] = None
            else:
                result[key_token.value] = self.parse_value()
            if not self.at("}"):
                self.expect(",")
        self.expect("}")
        return result

    def parse_list(self) -> list[Any]:
        result: list[Any] = []
        while not self.at("]"):
            result.append(self.parse_value())
            if not self.at("]"):
                self.expect(",")
        self.expect("]")
        return result


def parse_inline(text: str, number: int = 0) -> Any:
    """Parse the value part of a ``key: value`` line or a ``- item`` line."""
    text = _strip_comment(text.strip())
    if not text:
        return None
    if text[0] in "{[":
        return _FlowParser(text, number).parse()
    if text[0] in "\"'":
        value, end = _read_quoted(text, 0, number)
        if text[end:].strip():
            raise FrontmatterError(f"trailing content after string: {text[end:]!r}", line=number)
        return value
    if text[0] in "&*!|>":
        raise FrontmatterError(f"unsupported value syntax {text!r}", line=number)
    return resolve_scalar(text)


def resolve_scalar(text: str) -> Any:
    """Resolve a plain (unquoted) scalar into None/bool/int/float/str."""
    if text in ("", "~", "null", "Null", "NULL"):
        return None
    if text in ("true", "True", "TRUE"):
        return True
    if text in ("false", "False", "FALSE"):
        return False
    if _INT_RE.match(text):
        return int(text)
    if _FLOAT_RE.match(text):
        return float(text)
    return text


# ---------------------------------------------------------------------------
# Serializer
# ---------------------------------------------------------------------------


def _dump_mapping(data: dict[str, Any], indent: int, lines: list[str]) -> None:
    pad = " " * indent
    for key, value in data.items():
        if value is None:
            continue
        rendered_key = _dump_key(key)
        if isinstance(value, dict):
            if any(v is not None for v in value.values()):
                lines.append(f"{pad}{rendered_key}:")
                _dump_mapping(value, indent + 2, lines)
            else:
                lines.append(f"{pad}{rendered_key}: {{}}")
        elif isinstance(value, (list, tuple)):
            if not value:
                lines.append(f"{pad}{rendered_key}: []")
                continue
            lines.append(f"{pad}{rendered_key}:")
            for item in value:
                lines.append(f"{pad}  - {_dump_flow(item)}")
        else:
            lines.append(f"{pad}{rendered_key}: {_dump_scalar(value)}")


def _dump_flow(value: Any) -> str:
    if isinstance(value, dict):
        parts = [
            f"{_dump_key(k)}: {_dump_flow(v)}" for k, v in value.items() if v is not None
        ]
        return "{" + ", ".join(parts) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_dump_flow(v) for v in value) + "]"
    return _dump_scalar(value)


def _dump_key(key: Any) -> str:
    key = str(key)
    return key if _PLAIN_KEY_RE.match(key) else _quote(key)


def _dump_scalar(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise ValueError(f"cannot serialize non-finite float {value!r}")
        return repr(value)
    text = str(value)
    return _quote(text) if _needs_quotes(text) else text


def _needs_quotes(text: str) -> bool:
    if not text or text != text.strip():
        return True
    if not isinstance(resolve_scalar(text), str):
        return True
    if text[0] in _INDICATORS:
        return True
    return any(
        char in _FLOW_PUNCT or char in "#\"'\\" or _is_control(char) for char in text
    )


def _is_control(char: str) -> bool:
    # Cc covers \n, \r, \x0b-\x0c, \x1c-\x1e and \x85; Zl/Zp are U+2028/U+2029
    return unicodedata.category(char) in ("Cc", "Zl", "Zp")


def _quote(text: str) -> str:
    quoted = json.dumps(text, ensure_ascii=False)
    return "".join(f"\\u{ord(char):04x}" if _is_control(char) else char for char in quoted)
