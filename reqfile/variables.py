"""reqfile variables - {{...}} placeholder resolution and environments."""

from __future__ import annotations

import datetime
import email.utils
import json
import logging
import os
import random
import re
import time as _time
import uuid
from collections.abc import Mapping
from pathlib import Path

import yaml
from requests.structures import CaseInsensitiveDict

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")

BUILTIN_SIGIL = "$"
SHARED_ENVIRONMENT = "$shared"
DEFAULT_ENVIRONMENT = "dev"

MAX_INT = 2**31 - 1


def _split_builtin(name: str) -> tuple[str, str]:
    """Split ``$fn param...`` into (``$fn``, ``param...``)."""
    parts = name.split(None, 1)
    return parts[0], parts[1].strip() if len(parts) > 1 else ""


def _format_datetime(param: str) -> str:
    now = datetime.datetime.now(datetime.timezone.utc)
    if not param or param.lower() == "iso8601":
        return now.isoformat()
    if param.lower() == "rfc1123":
        return email.utils.format_datetime(now, usegmt=True)
    try:
        return now.strftime(param.strip("'\""))
    except ValueError:
        return now.isoformat()


def _random_int(param: str) -> str:
    low, high = 0, MAX_INT
    parts = [p for p in re.split(r"[\s,]+", param) if p]
    try:
        if len(parts) >= 1:
            low = int(parts[0])
        if len(parts) >= 2:
            high = int(parts[1])
    except ValueError:
        pass
    if high <= low:
        return str(low)
    return str(random.randrange(low, high))


class VariableResolver:
    """Resolve {{name}} placeholders against variable scopes and built-ins.

    Lookup order for a placeholder name:
      1. ``$``-prefixed built-in generators
      2. request-local variables
      3. file-scope variables
      4. the selected environment (plus ``$shared`` fallbacks and
         values set with :meth:`set_variable`)

    Unknown names are left untouched. Resolved text is never re-scanned.
    """

    def __init__(
        self,
        environment: str = DEFAULT_ENVIRONMENT,
        process_env: Mapping[str, str] | None = None,
    ):
        self.environment = environment or DEFAULT_ENVIRONMENT
        self.process_env = process_env if process_env is not None else os.environ
        self._document: dict = {}
        self._overrides: CaseInsensitiveDict = CaseInsensitiveDict()
        self._environment_vars: CaseInsensitiveDict = CaseInsensitiveDict()

    # ── Environment ─────────────────────────────────────────────────────

    def load_environment(self, path: str | Path | None) -> None:
        """Load an environment document (JSON or YAML) from ``path``.

        A missing or unreadable file leaves the environment map empty.
        """
        self._document = {}
        if path is not None:
            p = Path(path)
            if p.is_file():
                self._document = _read_environment_document(p)
        self._rebuild()

    def set_environment(self, name: str | None) -> None:
        self.environment = name or DEFAULT_ENVIRONMENT
        self._rebuild()

    def set_variable(self, name: str, value: str) -> None:
        self._overrides[name] = value
        self._environment_vars[name] = value

    def environment_names(self) -> list[str]:
        return [k for k in self._document if k != SHARED_ENVIRONMENT]

    @property
    def environment_variables(self) -> CaseInsensitiveDict:
        return CaseInsensitiveDict(self._environment_vars)

    def _rebuild(self) -> None:
        env_vars: CaseInsensitiveDict = CaseInsensitiveDict()
        _merge_section(env_vars, self._document.get(self.environment), overwrite=True)
        _merge_section(env_vars, self._document.get(SHARED_ENVIRONMENT), overwrite=False)
        env_vars.update(self._overrides)
        self._environment_vars = env_vars
        logger.debug(
            "Environment '%s' has %d variable(s)",
            self.environment,
            len(env_vars),
        )

    # ── Resolution ──────────────────────────────────────────────────────

    def resolve(
        self,
        text: str | None,
        local_vars: Mapping[str, str] | None = None,
        file_vars: Mapping[str, str] | None = None,
    ) -> str | None:
        """Replace every {{name}} in ``text`` in a single pass."""
        if not text:
            return text

        def _replace(m: re.Match) -> str:
            name = m.group(1).strip()
            value = self.lookup(name, local_vars, file_vars)
            return m.group(0) if value is None else value

        return PLACEHOLDER_RE.sub(_replace, text)

    def lookup(
        self,
        name: str,
        local_vars: Mapping[str, str] | None = None,
        file_vars: Mapping[str, str] | None = None,
    ) -> str | None:
        """Return the value for a placeholder name, or None if unresolved."""
        if name.startswith(BUILTIN_SIGIL):
            return self.builtin(name)

        for scope in (local_vars, file_vars, self._environment_vars):
            if scope and name in scope:
                return str(scope[name])
        return None

    def builtin(self, name: str) -> str | None:
        func, param = _split_builtin(name)

        if func == "$datetime":
            return _format_datetime(param)
        if func == "$guid":
            return str(uuid.uuid4())
        if func == "$randomInt":
            return _random_int(param)
        if func == "$timestamp":
            return str(int(_time.time()))
        if func == "$processEnv":
            return self.process_env.get(param, "")
        if func == "$dotenv":
            # .env lookup is not supported yet
            return ""
        return None


def _merge_section(target: CaseInsensitiveDict, section, overwrite: bool) -> None:
    if not isinstance(section, Mapping):
        return
    for key, value in section.items():
        if not isinstance(value, str):
            continue
        if overwrite or key not in target:
            target[key] = value


def _read_environment_document(path: Path) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable environment file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        return {}
    logger.debug("Loaded environment file %s", path)
    return data
