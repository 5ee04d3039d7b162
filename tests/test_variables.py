"""Tests for {{...}} placeholder resolution and environment loading."""

import datetime
import json
import re
import uuid

import pytest

from reqfile.parser import parse
from reqfile.variables import VariableResolver


@pytest.fixture
def resolver():
    return VariableResolver(process_env={"HOME": "/home/test"})


def _write_env(path, data):
    path.write_text(json.dumps(data))
    return path


class TestPrecedence:
    def test_file_variable(self, resolver):
        doc = parse("@token = 1\nGET http://a/{{token}}")
        req = doc.requests[0]
        assert resolver.resolve(req.url, req.variables, doc.variables) == "http://a/1"

    def test_local_shadows_file(self, resolver):
        doc = parse("@token = 1\nGET http://a/{{token}}\n@token = 2\n###\nGET http://b/{{token}}")
        first, second = doc.requests
        assert resolver.resolve(first.url, first.variables, doc.variables) == "http://a/2"
        assert resolver.resolve(second.url, second.variables, doc.variables) == "http://b/1"

    def test_file_shadows_environment(self, resolver):
        resolver.set_variable("host", "env-host")
        assert resolver.resolve("{{host}}", None, {"host": "file-host"}) == "file-host"
        assert resolver.resolve("{{host}}") == "env-host"

    def test_missing_passes_through(self, resolver):
        assert resolver.resolve("{{missing}}") == "{{missing}}"
        assert resolver.resolve("a {{ missing }} b") == "a {{ missing }} b"

    def test_whitespace_inside_braces(self, resolver):
        assert resolver.resolve("{{ token }}", {"token": "x"}) == "x"

    def test_lookup_is_case_insensitive(self, resolver):
        doc = parse("@Token = 7\n")
        assert resolver.resolve("{{TOKEN}}", None, doc.variables) == "7"

    def test_empty_and_none(self, resolver):
        assert resolver.resolve("") == ""
        assert resolver.resolve(None) is None


class TestSinglePass:
    def test_resolved_value_not_rescanned(self, resolver):
        local = {"a": "{{b}}", "b": "oops"}
        assert resolver.resolve("{{a}}", local) == "{{b}}"

    def test_inputs_not_mutated(self, resolver):
        local = {"a": "1"}
        file_vars = {"b": "2"}
        resolver.resolve("{{a}}{{b}}", local, file_vars)
        assert local == {"a": "1"}
        assert file_vars == {"b": "2"}

    def test_multiple_placeholders(self, resolver):
        assert resolver.resolve("{{a}}-{{b}}-{{c}}", {"a": "1", "b": "2"}) == "1-2-{{c}}"


class TestBuiltins:
    def test_guid(self, resolver):
        value = resolver.resolve("{{$guid}}")
        uuid.UUID(value)
        assert value != resolver.resolve("{{$guid}}")

    def test_timestamp(self, resolver):
        value = int(resolver.resolve("{{$timestamp}}"))
        now = int(datetime.datetime.now(datetime.timezone.utc).timestamp())
        assert abs(now - value) < 5

    def test_datetime_default_is_iso(self, resolver):
        value = resolver.resolve("{{$datetime}}")
        parsed = datetime.datetime.fromisoformat(value)
        assert parsed.utcoffset() == datetime.timedelta(0)

    def test_datetime_rfc1123(self, resolver):
        value = resolver.resolve("{{$datetime rfc1123}}")
        assert value.endswith("GMT")

    def test_datetime_strftime(self, resolver):
        value = resolver.resolve("{{$datetime %Y-%m-%d}}")
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}", value)

    def test_random_int_range(self, resolver):
        for _ in range(50):
            assert 5 <= int(resolver.resolve("{{$randomInt 5 8}}")) < 8

    def test_random_int_comma_params(self, resolver):
        for _ in range(20):
            assert 1 <= int(resolver.resolve("{{$randomInt 1, 3}}")) < 3

    def test_random_int_default(self, resolver):
        assert int(resolver.resolve("{{$randomInt}}")) >= 0

    def test_random_int_empty_range(self, resolver):
        assert resolver.resolve("{{$randomInt 9 9}}") == "9"

    def test_process_env(self, resolver):
        assert resolver.resolve("{{$processEnv HOME}}") == "/home/test"
        assert resolver.resolve("{{$processEnv NOPE}}") == ""

    def test_dotenv_is_empty(self, resolver):
        assert resolver.resolve("{{$dotenv API_KEY}}") == ""

    def test_unknown_builtin_passes_through(self, resolver):
        assert resolver.resolve("{{$nope}}") == "{{$nope}}"

    def test_builtin_beats_variables(self, resolver):
        assert resolver.resolve("{{$timestamp}}", {"$timestamp": "local"}) != "local"


class TestEnvironment:
    def test_load_selected_environment(self, tmp_path):
        path = _write_env(
            tmp_path / "http-client.env.json",
            {"dev": {"host": "http://dev"}, "prod": {"host": "http://prod"}},
        )
        r = VariableResolver()
        r.load_environment(path)
        assert r.resolve("{{host}}") == "http://dev"

    def test_shared_fills_missing_keys_only(self, tmp_path):
        path = _write_env(
            tmp_path / "env.json",
            {
                "$shared": {"host": "http://shared", "version": "v1"},
                "prod": {"host": "http://prod"},
            },
        )
        r = VariableResolver(environment="prod")
        r.load_environment(path)
        assert r.resolve("{{host}}/{{version}}") == "http://prod/v1"

    def test_set_environment_reselects(self, tmp_path):
        path = _write_env(
            tmp_path / "env.json",
            {"dev": {"host": "http://dev"}, "prod": {"host": "http://prod"}},
        )
        r = VariableResolver()
        r.load_environment(path)
        r.set_environment("prod")
        assert r.resolve("{{host}}") == "http://prod"
        assert sorted(r.environment_names()) == ["dev", "prod"]

    def test_set_variable_survives_switch(self, tmp_path):
        path = _write_env(tmp_path / "env.json", {"dev": {"token": "a"}, "prod": {"token": "b"}})
        r = VariableResolver()
        r.load_environment(path)
        r.set_variable("token", "override")
        r.set_environment("prod")
        assert r.resolve("{{token}}") == "override"

    def test_non_string_values_ignored(self, tmp_path):
        path = _write_env(tmp_path / "env.json", {"dev": {"port": 8080, "host": "h"}})
        r = VariableResolver()
        r.load_environment(path)
        assert r.resolve("{{host}}:{{port}}") == "h:{{port}}"

    def test_yaml_environment(self, tmp_path):
        path = tmp_path / "http-client.env.yaml"
        path.write_text("dev:\n  host: http://yaml\n")
        r = VariableResolver()
        r.load_environment(path)
        assert r.resolve("{{host}}") == "http://yaml"

    def test_missing_file_clears(self, tmp_path):
        path = _write_env(tmp_path / "env.json", {"dev": {"host": "h"}})
        r = VariableResolver()
        r.load_environment(path)
        r.load_environment(tmp_path / "nope.json")
        assert r.resolve("{{host}}") == "{{host}}"

    def test_invalid_json_ignored(self, tmp_path):
        path = tmp_path / "env.json"
        path.write_text("{not json")
        r = VariableResolver()
        r.load_environment(path)
        assert len(r.environment_variables) == 0
