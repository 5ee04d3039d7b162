"""reqfile parser - turns request-file text into request definitions."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field

from requests.structures import CaseInsensitiveDict

logger = logging.getLogger(__name__)

METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "TRACE", "CONNECT")

_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")
_DELIMITER_RE = re.compile(r"^###")
_NAME_DIRECTIVE_RE = re.compile(r"^(?:#|//)\s*@name\s+(\S+)\s*$", re.IGNORECASE)
_VARIABLE_RE = re.compile(r"^@([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")
_REQUEST_LINE_RE = re.compile(
    r"^(" + "|".join(METHODS) + r")\s+(.+)$",
    re.IGNORECASE,
)
_HEADER_RE = re.compile(r"^([^:]+):\s*(.*)$")


class ParseState(enum.Enum):
    """Where the parser is within the current block."""

    SEEKING = "seeking"
    HEADERS = "headers"
    BODY = "body"


@dataclass(frozen=True)
class RequestDefinition:
    """A single request as written in the file, placeholders unresolved."""

    method: str
    url: str
    name: str | None = None
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body: str | None = None
    variables: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    start_line: int = 0
    end_line: int = 0

    def contains_line(self, line: int) -> bool:
        return self.start_line <= line <= self.end_line


@dataclass(frozen=True)
class ParsedDocument:
    requests: tuple[RequestDefinition, ...] = ()
    variables: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)

    def find(self, name: str) -> RequestDefinition | None:
        """Return the request with the given name (case-insensitive)."""
        lower = name.lower()
        for req in self.requests:
            if req.name and req.name.lower() == lower:
                return req
        return None


class _Builder:
    """Mutable accumulator for the request currently being parsed."""

    def __init__(self):
        self.name: str | None = None
        self.method = "GET"
        self.url = ""
        self.headers: CaseInsensitiveDict = CaseInsensitiveDict()
        self.variables: CaseInsensitiveDict = CaseInsensitiveDict()
        self.body_lines: list[str] = []
        self.start_line = 0

    def build(self, end_line: int) -> RequestDefinition | None:
        lines = list(self.body_lines)
        while lines and not lines[-1].strip():
            lines.pop()
        if not self.url:
            return None
        return RequestDefinition(
            method=self.method,
            url=self.url,
            name=self.name,
            headers=self.headers,
            body="\n".join(lines) if lines else None,
            variables=self.variables,
            start_line=self.start_line,
            end_line=end_line,
        )


class DocumentParser:
    """Line-driven state machine over a request document.

    Each call to :meth:`feed` consumes one line and may move between the
    SEEKING, HEADERS and BODY states. Directives (delimiters, ``@name``,
    variable declarations and comments) are recognised in every state.
    """

    def __init__(self):
        self.state = ParseState.SEEKING
        self.requests: list[RequestDefinition] = []
        self.file_variables: CaseInsensitiveDict = CaseInsensitiveDict()
        self.pending_name: str | None = None
        self.current = _Builder()

    def feed(self, line: str, line_number: int) -> None:
        if self.state is ParseState.SEEKING and not line.strip():
            return

        if _DELIMITER_RE.match(line):
            self.finish(line_number - 1)
            self.pending_name = None
            return

        m = _NAME_DIRECTIVE_RE.match(line)
        if m:
            self.pending_name = m.group(1)
            return

        m = _VARIABLE_RE.match(line)
        if m:
            scope = (
                self.file_variables
                if self.state is ParseState.SEEKING
                else self.current.variables
            )
            scope[m.group(1)] = m.group(2).strip()
            return

        stripped = line.lstrip()
        if stripped.startswith(("#", "//")):
            return

        if self.state is ParseState.SEEKING:
            m = _REQUEST_LINE_RE.match(line)
            if m:
                self.current.name = self.pending_name
                self.current.method = m.group(1).upper()
                self.current.url = m.group(2).strip()
                self.current.start_line = line_number
                self.state = ParseState.HEADERS
            return

        if self.state is ParseState.HEADERS:
            if not line.strip():
                self.state = ParseState.BODY
                return
            m = _HEADER_RE.match(line)
            if m:
                self.current.headers[m.group(1).strip()] = m.group(2).strip()
            return

        self.current.body_lines.append(line)

    def finish(self, end_line: int) -> None:
        """Close the in-progress request (if any) and return to SEEKING."""
        if self.state is not ParseState.SEEKING:
            request = self.current.build(end_line)
            if request is not None:
                self.requests.append(request)
        self.current = _Builder()
        self.state = ParseState.SEEKING

    def result(self) -> ParsedDocument:
        return ParsedDocument(
            requests=tuple(self.requests),
            variables=self.file_variables,
        )


def split_lines(text: str) -> list[str]:
    return _LINE_SPLIT_RE.split(text)


def parse(text: str | None) -> ParsedDocument:
    """Parse request-file text into a ParsedDocument.

    Malformed lines are skipped. A document without requests yields an
    empty result rather than an error.
    """
    parser = DocumentParser()
    if not text:
        return parser.result()

    lines = split_lines(text)
    for i, line in enumerate(lines):
        parser.feed(line, i + 1)
    parser.finish(len(lines))

    doc = parser.result()
    logger.debug(
        "Parsed %d request(s), %d file variable(s)",
        len(doc.requests),
        len(doc.variables),
    )
    return doc


def find_request_at(text: str | None, line: int) -> RequestDefinition | None:
    """Return the request whose line span contains ``line`` (1-indexed)."""
    for req in parse(text).requests:
        if req.contains_line(line):
            return req
    return None
