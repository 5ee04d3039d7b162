"""reqfile core - config loading, .env loading, environment file lookup."""

import os
from pathlib import Path

import yaml
from dotenv import dotenv_values

GLOBAL_DIR = Path.home() / ".reqfile"
GLOBAL_CONFIG = GLOBAL_DIR / "config.yaml"

CWD_CONFIG_CANDIDATES = [
    ".reqfile.yaml",
    ".reqfile.yml",
    "reqfile.yaml",
    "reqfile.yml",
]

ENVIRONMENT_FILE_CANDIDATES = [
    "http-client.env.json",
    "http-client.env.yaml",
    "http-client.env.yml",
]


def resolve_path(
    candidates: list[Path],
    default: Path | None = None,
) -> Path | None:
    """Return the first existing path from candidates, else default."""
    for p in candidates:
        if p.exists():
            return p.resolve()
    return default


def resolve_config_path(config_file: str | None) -> Path | None:
    """Find the config file to use.

    Resolution order:
      1. Explicit -c flag (no fallthrough if missing)
      2. .reqfile.yaml (variants) in CWD
      3. ~/.reqfile/config.yaml
    """
    if config_file:
        return resolve_path([Path(config_file)])
    return resolve_path([Path(c) for c in CWD_CONFIG_CANDIDATES] + [GLOBAL_CONFIG])


def load_config(config_path: str | Path | None) -> dict:
    """Load YAML config file. Returns empty defaults if not found.

    Stores '_config_dir' in the returned dict so relative paths in the
    config resolve against the config file's directory.
    """
    if config_path is None:
        return {"defaults": {}, "_config_dir": None}
    path = Path(config_path)
    if not path.exists():
        return {"defaults": {}, "_config_dir": None}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return {
        "defaults": data.get("defaults") or {},
        "_config_dir": path.resolve().parent,
    }


def load_env(env_file: str | None, base_dir: str | Path = ".") -> dict[str, str]:
    """Load .env file and merge with os.environ.

    The result backs {{$processEnv NAME}}; .env values win over the
    process environment.
    """
    env = dict(os.environ)
    if env_file:
        dotenv_path = Path(base_dir) / env_file
        if dotenv_path.exists():
            dotenv_vars = dotenv_values(str(dotenv_path))
            env.update({k: v for k, v in dotenv_vars.items() if v is not None})
    return env


def resolve_environment_file(
    cli_override: str | None,
    config: dict,
    request_file: str | Path | None = None,
) -> Path | None:
    """Find the environment document (http-client.env.json and friends).

    Resolution order:
      1. --env-file CLI flag (no fallthrough)
      2. environment_file from config (relative to config file)
      3. http-client.env.* next to the request file
      4. http-client.env.* in CWD
    """
    if cli_override:
        return resolve_path([Path(cli_override)])

    candidates: list[Path] = []
    defaults = config.get("defaults", {})
    config_value = defaults.get("environment_file")
    config_dir = config.get("_config_dir")
    if config_value:
        p = Path(config_value)
        if not p.is_absolute() and config_dir:
            p = Path(config_dir) / p
        candidates.append(p)

    if request_file:
        parent = Path(request_file).resolve().parent
        candidates.extend(parent / name for name in ENVIRONMENT_FILE_CANDIDATES)
    candidates.extend(Path(name) for name in ENVIRONMENT_FILE_CANDIDATES)

    return resolve_path(candidates)
