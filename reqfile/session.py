"""reqfile session - named responses and {{name.response...}} references."""

from __future__ import annotations

import dataclasses
import datetime
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any

from requests.structures import CaseInsensitiveDict

logger = logging.getLogger(__name__)

CHAIN_REFERENCE_RE = re.compile(
    r"\{\{([A-Za-z_][A-Za-z0-9_]*)\.response\.(body|headers)(?:\.([^}]+))?\}\}",
)

# "field", "field[2]", "[0]", "field[0][1]"
_SEGMENT_RE = re.compile(r"^([^\[\]]*)((?:\[-?\d+\])*)$")
_INDEX_RE = re.compile(r"\[(-?\d+)\]")

_MISSING = object()


@dataclass
class StoredResponse:
    """A response kept for later requests to reference."""

    status_code: int = 0
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body: str | None = None
    parsed_body: Any = None
    has_parsed_body: bool = False
    timestamp: datetime.datetime | None = None


def _parse_path_segments(path: str) -> list[str | int] | None:
    """Split a body path into property names (str) and indices (int).

    Returns None when a segment is not ``name``, ``name[i]`` or ``[i]``.
    """
    segments: list[str | int] = []
    for part in path.split("."):
        m = _SEGMENT_RE.match(part.strip())
        if not m:
            return None
        name, brackets = m.group(1), m.group(2)
        if name:
            segments.append(name)
        elif not brackets:
            return None
        segments.extend(int(i) for i in _INDEX_RE.findall(brackets))
    return segments


def navigate(data: Any, path: str) -> Any:
    """Walk ``path`` through parsed JSON. Returns _MISSING on failure."""
    segments = _parse_path_segments(path)
    if segments is None:
        return _MISSING

    current = data
    for seg in segments:
        if isinstance(seg, int):
            if not isinstance(current, list) or not 0 <= seg < len(current):
                return _MISSING
            current = current[seg]
        else:
            if not isinstance(current, dict) or seg not in current:
                return _MISSING
            current = current[seg]
    return current


class JsonNumber(str):
    """A JSON number kept as the text it was written with."""


def _reject_constant(name: str):
    raise ValueError(f"{name} is not valid JSON")


def parse_json(text: str) -> Any:
    """Parse JSON strictly, keeping numbers as :class:`JsonNumber` text.

    ``NaN`` and ``Infinity`` are rejected.
    """
    return json.loads(
        text,
        parse_int=JsonNumber,
        parse_float=JsonNumber,
        parse_constant=_reject_constant,
    )


def stringify(value: Any) -> str:
    """Render a JSON leaf (or subtree) as reference text."""
    if isinstance(value, str):
        return str(value)
    return _dump(value)


def _dump(value: Any) -> str:
    if isinstance(value, JsonNumber):
        return str(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict):
        items = (f"{_dump(str(k))}:{_dump(v)}" for k, v in value.items())
        return "{" + ",".join(items) + "}"
    if isinstance(value, list):
        return "[" + ",".join(_dump(v) for v in value) + "]"
    return json.dumps(value)


class ChainSession:
    """Stores responses by request name for cross-request references.

    Supported references:
      {{name.response.body}}              raw body text
      {{name.response.body.a.b[0]}}       value inside a JSON body
      {{name.response.headers.X-Header}}  response header value

    Unresolvable references are left as written. Names and header keys
    compare case-insensitively. All operations share one lock.
    """

    def __init__(self):
        self._responses: CaseInsensitiveDict = CaseInsensitiveDict()
        self._lock = threading.Lock()

    def store_response(self, name: str | None, response: StoredResponse) -> None:
        """Store ``response`` under ``name``, replacing any earlier entry."""
        if not name:
            return

        entry = dataclasses.replace(
            response,
            headers=CaseInsensitiveDict(response.headers or {}),
            parsed_body=None,
            has_parsed_body=False,
            timestamp=datetime.datetime.now(datetime.timezone.utc),
        )
        if entry.body:
            try:
                entry.parsed_body = parse_json(entry.body)
                entry.has_parsed_body = True
            except ValueError:
                pass

        with self._lock:
            self._responses[name] = entry
        logger.debug(
            "Stored response '%s' (status %s, structured=%s)",
            name,
            entry.status_code,
            entry.has_parsed_body,
        )

    def get(self, name: str) -> StoredResponse | None:
        with self._lock:
            return self._responses.get(name)

    def stored_names(self) -> list[str]:
        with self._lock:
            return list(self._responses.keys())

    def clear_session(self) -> None:
        with self._lock:
            self._responses.clear()
        logger.debug("Chain session cleared")

    def resolve_chain_references(self, text: str | None) -> str | None:
        """Replace every resolvable chain reference in ``text``."""
        if not text:
            return text

        def _replace(m: re.Match) -> str:
            value = self._resolve_reference(m.group(1), m.group(2), m.group(3))
            return m.group(0) if value is None else value

        with self._lock:
            return CHAIN_REFERENCE_RE.sub(_replace, text)

    def _resolve_reference(self, name: str, kind: str, path: str | None) -> str | None:
        response = self._responses.get(name)
        if response is None:
            return None

        if kind == "headers":
            if not path:
                return None
            return response.headers.get(path.strip())

        if not path:
            return response.body
        if not response.has_parsed_body:
            return None
        value = navigate(response.parsed_body, path)
        if value is _MISSING:
            return None
        return stringify(value)
