"""Assembler/linker output parsing and source dialect detection."""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Tuple

from .toolchain_types import Diagnostic, Dialect, Severity


@dataclass(frozen=True)
class ErrorPattern:
    """A diagnostic line format. Group numbers of 0 mean the group is absent."""

    regex: Pattern[str]
    message: int
    file: int = 0
    line: int = 0
    column: int = 0
    severity: int = 0
    code: int = 0
    default_severity: Severity = Severity.ERROR


# Ordered most specific first; the first pattern that matches a line wins.
DIAGNOSTIC_PATTERNS: Dict[Dialect, List[ErrorPattern]] = {
    Dialect.NASM: [
        # main.asm:10:5: error: ... (optionally after a "nasm: " prefix)
        ErrorPattern(
            re.compile(r"^(?:[\w.-]+:\s+)?(.+?):(\d+):(\d+):\s*(error|warning|fatal):\s*(.+)$", re.I),
            file=1, line=2, column=3, severity=4, message=5,
        ),
        # main.asm:10: error: invalid combination of opcode and operands
        ErrorPattern(
            re.compile(r"^(?:[\w.-]+:\s+)?(.+?):(\d+):\s*(error|warning|fatal):\s*(.+)$", re.I),
            file=1, line=2, severity=3, message=4,
        ),
    ],
    Dialect.GAS: [
        ErrorPattern(
            re.compile(r"^(.+?):(\d+):(\d+):\s*(Error|Warning):\s*(.+)$", re.I),
            file=1, line=2, column=3, severity=4, message=5,
        ),
        # main.s:10: Error: invalid instruction suffix
        ErrorPattern(
            re.compile(r"^(.+?):(\d+):\s*(Error|Warning):\s*(.+)$", re.I),
            file=1, line=2, severity=3, message=4,
        ),
        ErrorPattern(re.compile(r"^(.+?):(\d+):\s*(.+)$"), file=1, line=2, message=3),
    ],
    Dialect.LLVM: [
        # main.s:15:8: error: unknown token in expression
        ErrorPattern(
            re.compile(r"^(.+?):(\d+):(\d+):\s*(error|warning|note):\s*(.+)$", re.I),
            file=1, line=2, column=3, severity=4, message=5,
        ),
        ErrorPattern(
            re.compile(r"^<stdin>:(\d+):\s*(error|warning|note):\s*(.+)$", re.I),
            line=1, severity=2, message=3,
        ),
    ],
    Dialect.ARMASM: [
        # "main.s", line 25: Error: A1234E: Undefined symbol
        ErrorPattern(
            re.compile(r'"(.+?)",\s*line\s*(\d+):\s*(Error|Warning):\s*(A\d+[EW]):\s*(.+)$', re.I),
            file=1, line=2, severity=3, code=4, message=5,
        ),
        ErrorPattern(
            re.compile(r"^(.+?):(\d+):\s*(error|warning):\s*(.+)$", re.I),
            file=1, line=2, severity=3, message=4,
        ),
    ],
}


def severity_from_text(text: Optional[str], default: Severity) -> Severity:
    if not text:
        return default
    lowered = text.lower()
    if "error" in lowered or "fatal" in lowered:
        return Severity.ERROR
    if "warning" in lowered:
        return Severity.WARNING
    if "note" in lowered or "info" in lowered:
        return Severity.INFO
    return default


def _group(match: "re.Match[str]", index: int) -> Optional[str]:
    return match.group(index) if index else None


def parse_output(output: str, dialect: Dialect, default_file: str) -> List[Diagnostic]:
    """
    Extract diagnostics from assembler or linker output.

    Lines that match none of the dialect's patterns are ignored; tools print
    plenty of text that is not a diagnostic.

    Args:
        output: Combined tool output
        dialect: Which pattern table to use
        default_file: File to report when a pattern carries no file name

    Returns:
        Diagnostics in output order
    """
    dialect = Dialect(dialect)
    patterns = DIAGNOSTIC_PATTERNS[dialect]
    diagnostics = []

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        for pattern in patterns:
            match = pattern.regex.search(line)
            if not match:
                continue
            line_number = _group(match, pattern.line)
            column = _group(match, pattern.column)
            diagnostics.append(
                Diagnostic(
                    file=_group(match, pattern.file) or default_file,
                    line=int(line_number) if line_number else 1,
                    column=int(column) if column else None,
                    message=match.group(pattern.message),
                    severity=severity_from_text(
                        _group(match, pattern.severity), pattern.default_severity
                    ),
                    code=_group(match, pattern.code),
                    dialect=dialect,
                    raw_text=line,
                )
            )
            break

    return diagnostics


# (label, regex, weight) per dialect. Kept as data so weights can be tuned without code changes.
DIALECT_INDICATORS: Dict[Dialect, List[Tuple[str, Pattern[str], int]]] = {
    Dialect.NASM: [
        ("section directive", re.compile(r"\bsection\s+\.\w+", re.I), 2),
        ("data declaration", re.compile(r"\bdb\s+|dw\s+|dd\s+|dq\s+", re.I), 2),
        ("reservation", re.compile(r"\bresb\s+|resw\s+|resd\s+|resq\s+", re.I), 2),
        ("equ", re.compile(r"\bequ\s+", re.I), 1),
        ("%include", re.compile(r"%include\s+", re.I), 2),
        ("%define/%macro", re.compile(r"%define\s+|%macro\s+", re.I), 2),
    ],
    Dialect.GAS: [
        ("dot directive line", re.compile(r"^\s*\.\w+\s", re.M), 2),
        ("data directive", re.compile(r"\.\s*(byte|short|long|quad|ascii|asciz)", re.I), 2),
        ("symbol directive", re.compile(r"\.\s*(global|globl|extern)", re.I), 1),
        ("%register", re.compile(r"%\w+"), 1),
        ("$immediate", re.compile(r"\$\d+"), 1),
    ],
    Dialect.LLVM: [
        ("function labels", re.compile(r"\.Lfunc_begin|\.Lfunc_end", re.I), 3),
        ("cfi directive", re.compile(r"\.cfi_\w+", re.I), 1),
    ],
    Dialect.ARMASM: [
        ("AREA/ENTRY/END", re.compile(r"\bAREA\s+|ENTRY\s+|END\s*$", re.I | re.M), 3),
        ("DCB/DCD/DCW", re.compile(r"\bDCB\s+|DCD\s+|DCW\s+", re.I), 2),
    ],
}

# Tie-break order.
DIALECT_PRIORITY = (Dialect.NASM, Dialect.GAS, Dialect.LLVM, Dialect.ARMASM)

UNKNOWN_CONFIDENCE = 0.375


@dataclass
class DialectDetection:
    dialect: Dialect
    confidence: float
    indicators: List[str] = field(default_factory=list)


def detect_dialect(
    source: str,
    indicators: Optional[Dict[Dialect, List[Tuple[str, Pattern[str], int]]]] = None,
) -> DialectDetection:
    """Guess the assembler dialect of a source text from weighted syntax indicators."""
    table = DIALECT_INDICATORS if indicators is None else indicators
    scores = {dialect: 0 for dialect in DIALECT_PRIORITY}
    matched: Dict[Dialect, List[str]] = {dialect: [] for dialect in DIALECT_PRIORITY}

    for dialect in DIALECT_PRIORITY:
        for label, regex, weight in table.get(dialect, []):
            if regex.search(source):
                scores[dialect] += weight
                matched[dialect].append(label)

    best = DIALECT_PRIORITY[0]
    for dialect in DIALECT_PRIORITY[1:]:
        if scores[dialect] > scores[best]:
            best = dialect

    total = sum(scores.values())
    if total == 0:
        return DialectDetection(dialect=best, confidence=UNKNOWN_CONFIDENCE)

    confidence = min(scores[best] / total * 1.5, 1.0)
    return DialectDetection(dialect=best, confidence=confidence, indicators=matched[best])
