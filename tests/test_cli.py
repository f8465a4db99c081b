"""Tests for familiar/cli/ — Click-based CLI commands."""

from __future__ import annotations

import tomllib

import pytest
from click.testing import CliRunner

from familiar.cli.app import cli


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return {
        "FAMILIAR_CONFIG_PATH": str(tmp_path / "cfg" / "config.toml"),
        "FAMILIAR_ME_MD_PATH": str(tmp_path / "home" / "ME.md"),
    }


@pytest.fixture
def run(env):
    runner = CliRunner()

    def _run(*args, input=None):
        return runner.invoke(cli, list(args), env=env, input=input)

    return _run


def _saved(env) -> dict:
    with open(env["FAMILIAR_CONFIG_PATH"], "rb") as f:
        return tomllib.load(f)


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


class TestConfigCommands:
    def test_path(self, run, env) -> None:
        result = run("config", "path")
        assert result.exit_code == 0
        assert result.output.strip() == env["FAMILIAR_CONFIG_PATH"]

    def test_show_defaults_before_first_save(self, run) -> None:
        result = run("config")
        assert result.exit_code == 0
        assert "(not created yet)" in result.output
        assert "  agent_name = 'AI'" in result.output
        assert "  permissions.trust_mode = 'prompt'" in result.output

    def test_set_and_get(self, run, env) -> None:
        result = run("config", "set", "camera.onvif_port", "8000")
        assert result.exit_code == 0, result.output
        assert result.output.startswith("Set camera.onvif_port = 8000 in ")
        assert _saved(env)["camera"]["onvif_port"] == 8000

        result = run("config", "get", "camera.onvif_port")
        assert result.output.strip() == "8000"

    def test_secrets_are_masked(self, run, env) -> None:
        result = run("config", "set", "api_key", "sk-secret")
        assert "Set api_key = *** in" in result.output
        assert _saved(env)["api_key"] == "sk-secret"

        shown = run("config", "show").output
        assert "  api_key = '***'" in shown
        assert "sk-secret" not in shown
        assert "  api_key = 'sk-secret'" in run("config", "show", "--reveal").output

    def test_rules_are_comma_separated(self, run, env) -> None:
        result = run("config", "set", "permissions.rules", "deny:walk, allow:bash:git *")
        assert result.exit_code == 0, result.output
        assert _saved(env)["permissions"]["rules"] == ["deny:walk", "allow:bash:git *"]

    def test_invalid_values_are_rejected(self, run, env) -> None:
        result = run("config", "set", "platform", "palm")
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

        result = run("config", "set", "permissions.rules", "maybe:walk")
        assert result.exit_code == 1

    def test_get_missing_key(self, run) -> None:
        result = run("config", "get", "camera.host")
        assert result.exit_code == 1
        assert "Key not found: camera.host" in result.output

    def test_unset(self, run, env) -> None:
        missing = run("config", "unset", "agent_name")
        assert missing.exit_code == 1
        assert "No config file at" in missing.output

        run("config", "set", "agent_name", "Kuro")
        result = run("config", "unset", "agent_name")
        assert result.exit_code == 0
        assert result.output.startswith("Removed agent_name from ")
        assert "agent_name" not in _saved(env)

        again = run("config", "unset", "agent_name")
        assert "Key not found: agent_name" in again.output


# ---------------------------------------------------------------------------
# persona
# ---------------------------------------------------------------------------


class TestPersonaCommands:
    def test_show_when_absent(self, run) -> None:
        result = run("persona")
        assert result.exit_code == 0
        assert "(no ME.md yet" in result.output

    def test_set_from_stdin_then_show(self, run, env) -> None:
        result = run("persona", "set", input="I am Kuro.\n")
        assert result.exit_code == 0
        assert result.output.strip() == f"Wrote 11 characters to {env['FAMILIAR_ME_MD_PATH']}"

        assert run("persona", "show").output == "I am Kuro.\n"

    def test_set_from_file(self, run, tmp_path) -> None:
        source = tmp_path / "persona.md"
        source.write_text("# Kuro\nA robot cat.\n", encoding="utf-8")
        run("persona", "set", str(source))
        assert run("persona").output == "# Kuro\nA robot cat.\n"


# ---------------------------------------------------------------------------
# chat (default command)
# ---------------------------------------------------------------------------


def test_no_subcommand_starts_the_repl(run, monkeypatch, tmp_path) -> None:
    factories = []
    monkeypatch.setattr("familiar.main.run_repl", lambda factory: factories.append(factory))

    result = run("--work-dir", str(tmp_path))

    assert result.exit_code == 0, result.output
    assert len(factories) == 1
    assert callable(factories[0])


def test_unknown_log_level_is_rejected(run) -> None:
    result = run("--log-level", "LOUD", "config", "path")
    assert result.exit_code == 2
