"""GDB/MI line codec: parse debugger output records and format MI commands."""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

# A value is a string, a list of values, or a tuple (mapping) of values.
MiValue = Union[str, List["MiValue"], Dict[str, "MiValue"]]

RECORD_KINDS = {
    "^": "result",
    "*": "exec",
    "+": "status",
    "=": "notify",
    "~": "console",
    "@": "target",
    "&": "log",
}

STREAM_KINDS = ("console", "target", "log")

PROMPT = "(gdb)"

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"'}

_TOKEN_RE = re.compile(r"\d+")
_CLASS_RE = re.compile(r"[A-Za-z0-9_-]+")
_KEY_RE = re.compile(r"([A-Za-z_][A-Za-z0-9_-]*)\s*=")


class MiParseError(ValueError):
    """Raised by strict parsing when a record had to be repaired or truncated."""


@dataclass
class MiRecord:
    """One parsed line of GDB/MI output."""

    kind: str
    record_class: str
    token: Optional[int] = None
    data: Dict[str, MiValue] = field(default_factory=dict)
    raw: str = ""

    @property
    def is_stream(self) -> bool:
        return self.kind in STREAM_KINDS

    @property
    def text(self) -> str:
        """Text payload of a stream record (empty for other records)."""
        return self.get_string("text") or ""

    def get_string(self, key: str) -> Optional[str]:
        value = self.data.get(key)
        return value if isinstance(value, str) else None

    def get_tuple(self, key: str) -> Optional[Dict[str, MiValue]]:
        value = self.data.get(key)
        return value if isinstance(value, dict) else None

    def get_list(self, key: str) -> Optional[List[MiValue]]:
        value = self.data.get(key)
        return value if isinstance(value, list) else None


def unescape(text: str) -> str:
    """Decode the C-style escapes GDB uses inside quoted strings."""
    chars = []
    i = 0
    while i < len(text):
        char = text[i]
        if char == "\\" and i + 1 < len(text):
            chars.append(_ESCAPES.get(text[i + 1], text[i + 1]))
            i += 2
        else:
            chars.append(char)
            i += 1
    return "".join(chars)


class _ValueParser:
    """Recursive-descent parser over the tail of a record line.

    Anything it cannot make sense of is dropped and noted in ``anomalies``
    instead of raising, so a half-written record still yields its prefix.
    """

    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.anomalies: List[str] = []

    def peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def skip_separators(self) -> None:
        while self.peek() in (",", " "):
            self.pos += 1

    def match_key(self) -> Optional[str]:
        match = _KEY_RE.match(self.text, self.pos)
        if not match:
            return None
        self.pos = match.end()
        return match.group(1)

    def parse_results(self) -> Dict[str, MiValue]:
        results: Dict[str, MiValue] = {}
        self.skip_separators()
        while self.pos < len(self.text):
            key = self.match_key()
            if key is None:
                self.anomalies.append(f"unexpected text at column {self.pos}")
                break
            results[key] = self.parse_value()
            self.skip_separators()
        return results

    def parse_value(self) -> MiValue:
        char = self.peek()
        if char == '"':
            return self.parse_string()
        if char == "[":
            return self.parse_list()
        if char == "{":
            return self.parse_tuple()
        return self.parse_bare()

    def parse_string(self) -> str:
        self.pos += 1
        chars = []
        while self.pos < len(self.text):
            char = self.text[self.pos]
            if char == "\\" and self.pos + 1 < len(self.text):
                chars.append(_ESCAPES.get(self.text[self.pos + 1], self.text[self.pos + 1]))
                self.pos += 2
            elif char == '"':
                self.pos += 1
                return "".join(chars)
            else:
                chars.append(char)
                self.pos += 1
        self.anomalies.append("unterminated string")
        return "".join(chars)

    def parse_list(self) -> List[MiValue]:
        self.pos += 1
        items: List[MiValue] = []
        while self.pos < len(self.text) and self.peek() != "]":
            self.skip_separators()
            if self.peek() == "]" or not self.peek():
                break
            key = self.match_key()
            if key is not None:
                items.append({key: self.parse_value()})
                continue
            start = self.pos
            value = self.parse_value()
            if self.pos == start:
                self.anomalies.append(f"unparseable list element at column {start}")
                break
            items.append(value)
        self.close("]")
        return items

    def parse_tuple(self) -> Dict[str, MiValue]:
        self.pos += 1
        items: Dict[str, MiValue] = {}
        while self.pos < len(self.text) and self.peek() != "}":
            self.skip_separators()
            if self.peek() == "}" or not self.peek():
                break
            key = self.match_key()
            if key is None:
                self.anomalies.append(f"tuple element without key at column {self.pos}")
                break
            items[key] = self.parse_value()
        self.close("}")
        return items

    def parse_bare(self) -> str:
        start = self.pos
        while self.pos < len(self.text) and self.text[self.pos] not in "{,]}":
            self.pos += 1
        return self.text[start : self.pos].strip()

    def close(self, bracket: str) -> None:
        if self.peek() == bracket:
            self.pos += 1
        else:
            self.anomalies.append(f"missing '{bracket}'")


def _split_token(text: str) -> Tuple[Optional[int], str]:
    match = _TOKEN_RE.match(text)
    if not match:
        return None, text
    return int(match.group(0)), text[match.end() :]


def parse_line(line: str, strict: bool = False) -> Optional[MiRecord]:
    """
    Parse one line of GDB/MI output into an MiRecord.

    Args:
        line: Raw output line (with or without trailing newline)
        strict: Raise MiParseError instead of returning a repaired record

    Returns:
        The parsed record, or None for blank lines and the "(gdb)" prompt
    """
    trimmed = line.strip()
    if not trimmed or trimmed == PROMPT:
        return None

    token, rest = _split_token(trimmed)
    kind = RECORD_KINDS.get(rest[:1])
    if kind is None:
        # Not MI framed; surface the line as console output.
        return MiRecord(kind="console", record_class="output", data={"text": trimmed}, raw=line)

    body = rest[1:]
    if kind in STREAM_KINDS:
        if body.startswith('"'):
            parser = _ValueParser(body)
            text = parser.parse_string()
            if strict and (parser.anomalies or parser.pos != len(body)):
                raise MiParseError(f"Malformed stream record: {trimmed}")
        else:
            text = body
        return MiRecord(kind=kind, record_class="output", token=token, data={"text": text}, raw=line)

    class_match = _CLASS_RE.match(body)
    if not class_match:
        if strict:
            raise MiParseError(f"Record without class: {trimmed}")
        return MiRecord(kind=kind, record_class="unknown", token=token, raw=line)

    parser = _ValueParser(body[class_match.end() :])
    data = parser.parse_results()
    if strict and parser.anomalies:
        raise MiParseError(f"{parser.anomalies[0]} in record: {trimmed}")
    return MiRecord(kind=kind, record_class=class_match.group(0), token=token, data=data, raw=line)


def quote_argument(value: str) -> str:
    """Quote an MI argument if it contains a space or a double quote."""
    if " " in value or '"' in value:
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return value


def format_command(token: int, command: str, args: Optional[Dict[str, str]] = None) -> str:
    """
    Format a tokenized MI command line (without the trailing newline).

    Example:
        format_command(3, "stack-list-frames", {"thread": "1"})
        -> '3-stack-list-frames --thread 1'
    """
    parts = [f"{token}-{command}"]
    for key, value in (args or {}).items():
        parts.append(f"--{key} {quote_argument(value)}")
    return " ".join(parts)
