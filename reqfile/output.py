"""reqfile output - render execution results for the terminal."""

from __future__ import annotations

import json

from reqfile.executor import ExecutionResult


def _pretty_body(result: ExecutionResult) -> str:
    if result.is_json and result.body:
        try:
            return json.dumps(json.loads(result.body), indent=2, ensure_ascii=False)
        except ValueError:
            pass
    return result.body


def format_cookie(cookie) -> str:
    parts = [f"{cookie.name}={cookie.value}"]
    if cookie.domain:
        parts.append(f"Domain={cookie.domain}")
    if cookie.path:
        parts.append(f"Path={cookie.path}")
    if cookie.expires:
        parts.append(f"Expires={cookie.expires.isoformat()}")
    if cookie.http_only:
        parts.append("HttpOnly")
    if cookie.secure:
        parts.append("Secure")
    if cookie.same_site:
        parts.append(f"SameSite={cookie.same_site}")
    return "; ".join(parts)


def format_result(
    result: ExecutionResult,
    verbose: bool = False,
    raw: bool = False,
) -> str:
    """Format an execution result for CLI output.

    Default output:
        STATUS: 200 OK
        TIME: 45 ms
        SIZE: 17 B
        BODY:
        {...}

    ``verbose`` adds the request line, response headers and cookies.
    ``raw`` returns only the body text.
    """
    if not result.success:
        return f"ERROR: {result.error}"

    if raw:
        return result.body

    lines: list[str] = []

    if verbose:
        lines.append(f"REQUEST: {result.request_method} {result.request_url}")

    status = f"STATUS: {result.status_code}"
    if result.status_description:
        status += f" {result.status_description}"
    lines.append(status)
    lines.append(f"TIME: {result.formatted_time}")
    lines.append(f"SIZE: {result.formatted_size}")

    if verbose and result.headers:
        lines.append("HEADERS:")
        for key, value in result.headers.items():
            lines.append(f"  {key}: {value}")

    if verbose and result.has_cookies:
        lines.append("COOKIES:")
        for cookie in result.cookies:
            lines.append(f"  {format_cookie(cookie)}")

    if result.body:
        lines.append("BODY:")
        lines.append(_pretty_body(result))

    return "\n".join(lines)
