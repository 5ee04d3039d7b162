"""reqfile CLI - run requests defined in .http / .rest files."""

import logging
import sys
from pathlib import Path

import click

TOOL_HELP = """\
reqfile: run HTTP requests written in plain-text request files.

\b
REQUEST FILES
─────────────
  Requests are separated by ### lines. Each request is a request
  line, optional headers, a blank line, then an optional body.

  \b
    @host = http://localhost:3000

    ### Log in
    # @name login
    POST {{host}}/api/auth/login
    Content-Type: application/json

    {"email": "admin@test.com", "password": "secret"}

    ###
    GET {{host}}/api/users/{{login.response.body.id}}
    Authorization: Bearer {{login.response.body.token}}

\b
SELECTING REQUESTS
──────────────────
  reqfile api.http                 First request in the file
  reqfile api.http -l 12           Request spanning line 12
  reqfile api.http -n login        Request named "login"
  reqfile api.http --all           Every request, in order
  reqfile api.http --list          List requests without running them

  With --all, named responses feed later requests in the same run.

\b
VARIABLES
─────────
  @name = value                    File variable (before any request)
                                   or request variable (after a
                                   request line)
  {{name}}                         Request → file → environment
  {{login.response.body.a.b[0]}}   Value from a named response body
  {{login.response.headers.X-Id}}  Header from a named response
  {{$guid}}                        Random UUID
  {{$randomInt 1 100}}             Integer in [1, 100)
  {{$timestamp}}                   Unix timestamp (seconds)
  {{$datetime iso8601}}            UTC time (iso8601, rfc1123 or strftime)
  {{$processEnv HOME}}             Process environment variable

  Unknown placeholders are sent as written.

\b
ENVIRONMENTS
────────────
  http-client.env.json holds one object per environment plus an
  optional "$shared" object used for missing keys:

  \b
    {
      "$shared": {"host": "http://localhost:3000"},
      "prod": {"host": "https://api.example.com"}
    }

  reqfile api.http -e prod
  reqfile api.http --env-file envs/http-client.env.json -V token=abc

  Environment file resolution:
    1. --env-file CLI flag
    2. environment_file from config (relative to config file)
    3. http-client.env.json next to the request file
    4. http-client.env.json in CWD

\b
CONFIG FILE FORMAT (.reqfile.yaml)
──────────────────────────────────
  Config resolution order:
    1. -c/--config flag (explicit path)
    2. .reqfile.yaml / .reqfile.yml / reqfile.yaml / reqfile.yml in CWD
    3. ~/.reqfile/config.yaml (global)

  \b
  defaults:
    timeout: 30                     # seconds
    follow_redirects: true
    max_redirects: 10
    environment: dev
    environment_file: http-client.env.json
    env_file: .env                  # feeds {{$processEnv NAME}}

\b
OUTPUT FORMAT
─────────────
    STATUS: 200 OK
    TIME: 45 ms
    SIZE: 17 B
    BODY:
    {"id": 1}

  --verbose adds the resolved request line, headers and cookies.
  --raw outputs only the response body.
"""


@click.command(
    cls=click.Command,
    help=TOOL_HELP,
    context_settings={"max_content_width": 88},
)
@click.argument("request_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-l",
    "--line",
    type=int,
    default=None,
    help="Run the request whose block contains this 1-indexed line.",
)
@click.option("-n", "--name", default=None, help="Run the request with this @name.")
@click.option(
    "--all",
    "run_all",
    is_flag=True,
    default=False,
    help="Run every request in the file, in order.",
)
@click.option(
    "-e",
    "--env",
    "env_name",
    default=None,
    help="Environment to select from the environment file. Default: dev.",
)
@click.option(
    "--env-file",
    "env_file",
    default=None,
    help="Environment file path. Default: http-client.env.json near the request file.",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    default=None,
    help="Config file path. Default: .reqfile.yaml in CWD, then ~/.reqfile/config.yaml.",
)
@click.option(
    "-V",
    "--var",
    multiple=True,
    help="Environment variable override as key=value. Repeatable.",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Request timeout in seconds. Default: 30.",
)
@click.option(
    "--verbose",
    is_flag=True,
    default=False,
    help="Include request line, response headers and cookies in output.",
)
@click.option(
    "--raw",
    is_flag=True,
    default=False,
    help="Output the response body only. Useful for piping.",
)
@click.option(
    "--list",
    "show_list",
    is_flag=True,
    default=False,
    help="List the requests in the file.",
)
@click.option("--debug", is_flag=True, default=False, help="Log debug output to stderr.")
def main(
    request_file,
    line,
    name,
    run_all,
    env_name,
    env_file,
    config_file,
    var,
    timeout,
    verbose,
    raw,
    show_list,
    debug,
):
    """Run requests from a request file."""
    from reqfile.core import (
        load_config,
        load_env,
        resolve_config_path,
        resolve_environment_file,
    )
    from reqfile.executor import ExecutionConfig, HttpExecutor
    from reqfile.output import format_result
    from reqfile.parser import parse
    from reqfile.session import ChainSession
    from reqfile.variables import VariableResolver

    if debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            stream=sys.stderr,
        )

    # --- Load config ---
    config_path = resolve_config_path(config_file)
    config = load_config(config_path)
    defaults = config.get("defaults", {})

    text = Path(request_file).read_text(encoding="utf-8")
    doc = parse(text)

    if show_list:
        _cmd_list(doc, request_file)
        return

    requests_to_run = _select_requests(doc, line, name, run_all)
    if not requests_to_run:
        click.echo(f"ERROR: {_selection_error(request_file, line, name)}", err=True)
        sys.exit(1)

    # --- Variables ---
    env = load_env(defaults.get("env_file"), base_dir=config.get("_config_dir") or ".")
    resolver = VariableResolver(
        environment=env_name or defaults.get("environment"),
        process_env=env,
    )
    resolver.load_environment(resolve_environment_file(env_file, config, request_file))
    for v_str in var:
        if "=" in v_str:
            k, val = v_str.split("=", 1)
            resolver.set_variable(k.strip(), val.strip())

    exec_config = ExecutionConfig.from_defaults(defaults)
    if timeout:
        exec_config.timeout = timeout

    with HttpExecutor(resolver, ChainSession(), exec_config) as executor:
        for req in requests_to_run:
            if len(requests_to_run) > 1 and not raw:
                click.echo(f"### {_label(req)}")
            result = executor.execute(req, doc.variables)
            if not result.success:
                click.echo(f"ERROR: {result.error}", err=True)
                sys.exit(1)
            click.echo(format_result(result, verbose=verbose, raw=raw))
            if len(requests_to_run) > 1 and not raw:
                click.echo()


# ── Helpers ──────────────────────────────────────────────────────────────


def _select_requests(doc, line, name, run_all):
    if run_all:
        return list(doc.requests)
    if name:
        req = doc.find(name)
        return [req] if req else []
    if line is not None:
        return [r for r in doc.requests if r.contains_line(line)][:1]
    return list(doc.requests[:1])


def _selection_error(request_file, line, name):
    if name:
        return f"No request named '{name}' in {request_file}."
    if line is not None:
        return f"No request at line {line} in {request_file}."
    return f"No requests found in {request_file}."


def _label(req):
    if req.name:
        return f"{req.name} ({req.method} {req.url})"
    return f"{req.method} {req.url}"


def _cmd_list(doc, request_file):
    if not doc.requests:
        click.echo(f"No requests found in {request_file}.")
        return
    click.echo(f"{len(doc.requests)} request(s) in {request_file}:\n")
    for req in doc.requests:
        label = req.name or "-"
        click.echo(
            f"  [{req.start_line}-{req.end_line}] {label:<16} {req.method:<7} {req.url}",
        )
    if doc.variables:
        click.echo(f"\nFile variables: {', '.join(doc.variables.keys())}")
