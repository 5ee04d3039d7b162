"""reqfile executor - HTTP request execution."""

from __future__ import annotations

import asyncio
import codecs
import concurrent.futures
import datetime
import email.utils
import enum
import logging
import threading
import time
from collections.abc import Mapping
from typing import Any

import requests
import urllib3
from requests.structures import CaseInsensitiveDict

from reqfile.parser import RequestDefinition
from reqfile.session import ChainSession, StoredResponse
from reqfile.variables import VariableResolver

logger = logging.getLogger(__name__)

CONTENT_HEADERS = frozenset(
    {
        "content-type",
        "content-length",
        "content-encoding",
        "content-language",
        "content-location",
        "content-md5",
        "content-range",
        "content-disposition",
    },
)

DEFAULT_CHARSET = "utf-8"
CHUNK_SIZE = 64 * 1024
POLL_INTERVAL = 0.05


class FailureKind(enum.Enum):
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    UNEXPECTED = "unexpected"


class RequestCancelled(Exception):
    """Raised internally when the caller's cancel event is set."""


class ExecutionConfig:
    """Transport settings for HttpExecutor."""

    def __init__(
        self,
        timeout: float = 30,
        follow_redirects: bool = True,
        max_redirects: int = 10,
        auto_decompress: bool = True,
    ):
        self.timeout = timeout
        self.follow_redirects = follow_redirects
        self.max_redirects = max_redirects
        self.auto_decompress = auto_decompress

    @classmethod
    def from_defaults(cls, defaults: Mapping[str, Any] | None) -> ExecutionConfig:
        """Build from the ``defaults`` section of a config file."""
        defaults = defaults or {}
        config = cls()
        if defaults.get("timeout"):
            config.timeout = float(defaults["timeout"])
        if defaults.get("follow_redirects") is not None:
            config.follow_redirects = bool(defaults["follow_redirects"])
        if defaults.get("max_redirects") is not None:
            config.max_redirects = int(defaults["max_redirects"])
        if defaults.get("auto_decompress") is not None:
            config.auto_decompress = bool(defaults["auto_decompress"])
        return config


class RequestTiming:
    """Timing in milliseconds. Phases requests cannot observe stay 0."""

    def __init__(self):
        self.dns_ms: float = 0
        self.connect_ms: float = 0
        self.tls_ms: float = 0
        self.time_to_first_byte_ms: float = 0
        self.content_download_ms: float = 0
        self.total_ms: float = 0


class CookieInfo:
    """A single Set-Cookie header, parsed."""

    def __init__(self, name: str, value: str, raw: str = ""):
        self.name = name
        self.value = value
        self.domain: str | None = None
        self.path: str | None = None
        self.expires: datetime.datetime | None = None
        self.http_only = False
        self.secure = False
        self.same_site: str | None = None
        self.raw = raw

    def __repr__(self):
        return f"CookieInfo({self.name!r}, {self.value!r})"


class ExecutionResult:
    """Result of executing one request definition."""

    def __init__(self):
        self.success: bool = False
        self.error: str | None = None
        self.failure_kind: FailureKind | None = None

        # request as sent, after resolution
        self.request_method: str = ""
        self.request_url: str = ""
        self.request_headers: CaseInsensitiveDict = CaseInsensitiveDict()
        self.request_body: str | None = None

        self.status_code: int = 0
        self.status_description: str = ""
        self.headers: CaseInsensitiveDict = CaseInsensitiveDict()
        self.cookies: list[CookieInfo] = []
        self.body: str = ""
        self.body_bytes: bytes = b""
        self.content_type: str | None = None
        self.size_bytes: int = 0

        self.timing = RequestTiming()
        self.executed_at = datetime.datetime.now(datetime.timezone.utc)

    @property
    def formatted_size(self) -> str:
        size = self.size_bytes
        if size < 1024:
            return f"{size} B"
        if size < 1024 * 1024:
            return f"{size / 1024:.1f} KB"
        return f"{size / (1024 * 1024):.1f} MB"

    @property
    def formatted_time(self) -> str:
        ms = self.timing.total_ms
        if ms < 1000:
            return f"{ms:.0f} ms"
        return f"{ms / 1000:.2f} s"

    @property
    def is_success_status_code(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_json(self) -> bool:
        ct = (self.content_type or "").lower()
        return "application/json" in ct or "+json" in ct

    @property
    def is_xml(self) -> bool:
        ct = (self.content_type or "").lower()
        return "application/xml" in ct or "+xml" in ct or "text/xml" in ct

    @property
    def is_html(self) -> bool:
        return "text/html" in (self.content_type or "").lower()

    @property
    def has_cookies(self) -> bool:
        return bool(self.cookies)


# ── Helpers ──────────────────────────────────────────────────────────────


def is_content_header(name: str) -> bool:
    return name.strip().lower() in CONTENT_HEADERS


def split_content_headers(
    headers: Mapping[str, str],
) -> tuple[CaseInsensitiveDict, CaseInsensitiveDict]:
    """Partition headers into (transport headers, content headers)."""
    transport: CaseInsensitiveDict = CaseInsensitiveDict()
    content: CaseInsensitiveDict = CaseInsensitiveDict()
    for key, value in headers.items():
        (content if is_content_header(key) else transport)[key] = value
    return transport, content


def charset_from_content_type(content_type: str | None) -> str | None:
    """Return the declared charset if Python knows it, else None."""
    if not content_type:
        return None
    for part in content_type.split(";"):
        part = part.strip()
        if part.lower().startswith("charset="):
            charset = part[8:].strip().strip("\"'")
            try:
                return codecs.lookup(charset).name
            except LookupError:
                return None
    return None


def decode_body(data: bytes, content_type: str | None) -> str:
    charset = charset_from_content_type(content_type) or DEFAULT_CHARSET
    return data.decode(charset, errors="replace")


def parse_cookie(header: str | None) -> CookieInfo | None:
    """Parse one Set-Cookie value. Returns None without a name=value pair."""
    if not header:
        return None
    parts = header.split(";")
    name, sep, value = parts[0].partition("=")
    if not sep or not name.strip():
        return None

    cookie = CookieInfo(name.strip(), value.strip(), raw=header)
    for attr in parts[1:]:
        attr_name, _, attr_value = attr.strip().partition("=")
        attr_name = attr_name.strip().lower()
        attr_value = attr_value.strip()
        if attr_name == "domain":
            cookie.domain = attr_value
        elif attr_name == "path":
            cookie.path = attr_value
        elif attr_name == "expires":
            try:
                cookie.expires = email.utils.parsedate_to_datetime(attr_value)
            except (TypeError, ValueError, IndexError):
                pass
        elif attr_name == "httponly":
            cookie.http_only = True
        elif attr_name == "secure":
            cookie.secure = True
        elif attr_name == "samesite":
            cookie.same_site = attr_value
    return cookie


def _set_cookie_values(resp: requests.Response) -> list[str]:
    """Every Set-Cookie header, unmerged."""
    raw_headers = getattr(resp.raw, "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "getlist"):
        return list(raw_headers.getlist("Set-Cookie"))
    value = resp.headers.get("Set-Cookie")
    return [value] if value else []


def _discard_response(future: concurrent.futures.Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


# ── Executor ─────────────────────────────────────────────────────────────


class HttpExecutor:
    """Resolve, send and capture request definitions.

    URL, header values and body are resolved independently: chain
    references first, then generic placeholders. Named requests store
    their response in the chain session after a successful call.

    The underlying requests.Session is shared and may be used from
    several threads at once.
    """

    def __init__(
        self,
        resolver: VariableResolver | None = None,
        session: ChainSession | None = None,
        config: ExecutionConfig | None = None,
        max_workers: int = 8,
    ):
        self.resolver = resolver or VariableResolver()
        self.session = session or ChainSession()
        self.config = config or ExecutionConfig()

        self._http = requests.Session()
        self._http.max_redirects = self.config.max_redirects
        if self.config.auto_decompress:
            self._http.headers["Accept-Encoding"] = "gzip, deflate"
        else:
            self._http.headers["Accept-Encoding"] = "identity"
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="reqfile-http",
        )

    def close(self) -> None:
        self._pool.shutdown(wait=False)
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def resolve_field(
        self,
        text: str | None,
        request: RequestDefinition,
        file_variables: Mapping[str, str] | None,
    ) -> str | None:
        resolved = self.session.resolve_chain_references(text)
        return self.resolver.resolve(resolved, request.variables, file_variables)

    def execute(
        self,
        request: RequestDefinition,
        file_variables: Mapping[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        """Execute a request definition and return a structured result.

        Never raises - failures are reported through ``success``,
        ``failure_kind`` and ``error``. Setting ``cancel`` aborts the call.
        """
        result = ExecutionResult()
        start = time.monotonic()
        deadline = start + self.config.timeout

        try:
            result.request_method = request.method
            result.request_url = self.resolve_field(request.url, request, file_variables) or ""
            for key, value in request.headers.items():
                result.request_headers[key] = self.resolve_field(value, request, file_variables)
            if request.body:
                result.request_body = self.resolve_field(request.body, request, file_variables)

            transport, content = split_content_headers(result.request_headers)
            headers = dict(transport)
            data = None
            if result.request_body:
                content.pop("Content-Length", None)
                headers.update(content)
                charset = charset_from_content_type(content.get("Content-Type"))
                data = result.request_body.encode(charset or DEFAULT_CHARSET)

            logger.debug("%s %s", result.request_method, result.request_url)
            resp = self._dispatch(
                {
                    "method": result.request_method,
                    "url": result.request_url,
                    "headers": headers,
                    "data": data,
                    "timeout": self.config.timeout,
                    "allow_redirects": self.config.follow_redirects,
                    "stream": True,
                },
                cancel,
                deadline,
            )
            try:
                self._capture(resp, result, cancel, deadline)
            finally:
                resp.close()

            result.success = True
            if request.name:
                self.session.store_response(
                    request.name,
                    StoredResponse(
                        status_code=result.status_code,
                        headers=CaseInsensitiveDict(result.headers),
                        body=result.body,
                    ),
                )

        except RequestCancelled:
            result.failure_kind = FailureKind.CANCELLED
            result.error = "Request was cancelled"
        except requests.exceptions.Timeout:
            result.failure_kind = FailureKind.TIMEOUT
            result.error = f"Request timed out after {self.config.timeout:g}s"
        except requests.exceptions.ConnectionError as e:
            result.failure_kind = FailureKind.TRANSPORT
            result.error = f"Connection error: {e}"
        except requests.exceptions.RequestException as e:
            result.failure_kind = FailureKind.TRANSPORT
            result.error = f"Request failed: {e}"
        except Exception as e:
            result.failure_kind = FailureKind.UNEXPECTED
            result.error = f"Unexpected error: {e}"

        result.timing.total_ms = (time.monotonic() - start) * 1000
        if result.error:
            logger.debug("Request failed (%s): %s", result.failure_kind.value, result.error)
        return result

    async def execute_async(
        self,
        request: RequestDefinition,
        file_variables: Mapping[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        """Run :meth:`execute` on a worker thread.

        If the awaiting task is cancelled, the in-flight call is aborted
        before the cancellation propagates.
        """
        cancel = cancel or threading.Event()
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None,
                self.execute,
                request,
                file_variables,
                cancel,
            )
        except asyncio.CancelledError:
            cancel.set()
            raise

    def _dispatch(
        self,
        kwargs: dict[str, Any],
        cancel: threading.Event | None,
        deadline: float,
    ) -> requests.Response:
        """Send on a worker thread while watching the cancel event and deadline."""
        if cancel is not None and cancel.is_set():
            raise RequestCancelled()
        future = self._pool.submit(self._http.request, **kwargs)
        return _wait(
            future,
            cancel,
            deadline,
            abandon=lambda: future.add_done_callback(_discard_response),
        )

    def _read_body(self, resp: requests.Response) -> bytes:
        try:
            if self.config.auto_decompress:
                return b"".join(resp.iter_content(chunk_size=CHUNK_SIZE))
            return b"".join(resp.raw.stream(CHUNK_SIZE, decode_content=False))
        except urllib3.exceptions.ReadTimeoutError as e:
            raise requests.exceptions.ReadTimeout(e) from e
        except urllib3.exceptions.HTTPError as e:
            raise requests.exceptions.ConnectionError(e) from e
        except requests.exceptions.ConnectionError as e:
            # iter_content wraps urllib3 read timeouts in ConnectionError
            if e.args and isinstance(e.args[0], urllib3.exceptions.ReadTimeoutError):
                raise requests.exceptions.ReadTimeout(e) from e
            raise

    def _capture(
        self,
        resp: requests.Response,
        result: ExecutionResult,
        cancel: threading.Event | None,
        deadline: float,
    ) -> None:
        result.status_code = resp.status_code
        result.status_description = resp.reason or ""
        result.headers = CaseInsensitiveDict(resp.headers)
        result.content_type = resp.headers.get("Content-Type")
        result.timing.time_to_first_byte_ms = resp.elapsed.total_seconds() * 1000

        for value in _set_cookie_values(resp):
            cookie = parse_cookie(value)
            if cookie is not None:
                result.cookies.append(cookie)

        download_start = time.monotonic()
        future = self._pool.submit(self._read_body, resp)
        # On cancel or deadline the response is closed under the still-running read.
        result.body_bytes = _wait(future, cancel, deadline, abandon=resp.close)
        result.timing.content_download_ms = (time.monotonic() - download_start) * 1000

        result.size_bytes = len(result.body_bytes)
        result.body = decode_body(result.body_bytes, result.content_type)


def _wait(
    future: concurrent.futures.Future,
    cancel: threading.Event | None,
    deadline: float,
    abandon,
):
    """Wait for ``future`` in short slices, giving up on cancel or deadline.

    ``abandon`` is called before giving up so the worker's resources are
    released once it finishes.
    """
    while True:
        if cancel is not None and cancel.is_set():
            abandon()
            raise RequestCancelled()
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            abandon()
            raise requests.exceptions.Timeout()
        try:
            return future.result(timeout=min(POLL_INTERVAL, remaining))
        except concurrent.futures.TimeoutError:
            continue
