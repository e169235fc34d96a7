import json

import pytest

from yamen_bridge.errors import ConfigurationError
from yamen_bridge.settings import load_secret, load_store_settings, load_terminal_config

SECRET = "s" * 32


def no_prompt(prompt):
    raise AssertionError(f"unexpected prompt: {prompt}")


def test_load_secret():
    assert load_secret({"YAMEN_SECRET": SECRET}) == SECRET


@pytest.mark.parametrize("environ", [{}, {"YAMEN_SECRET": ""}, {"YAMEN_SECRET": "short"}])
def test_load_secret_rejects_missing_or_short(environ):
    with pytest.raises(ConfigurationError):
        load_secret(environ)


def test_load_store_settings():
    settings = load_store_settings({
        "SUPABASE_URL": " https://example.supabase.co ",
        "SUPABASE_KEY": "service-key",
    })
    assert settings.url == "https://example.supabase.co"
    assert settings.key == "service-key"


def test_load_store_settings_names_missing_variables():
    with pytest.raises(ConfigurationError, match="SUPABASE_KEY"):
        load_store_settings({"SUPABASE_URL": "https://example.supabase.co"})


def test_terminal_config_from_file(tmp_path):
    path = tmp_path / "TERMINAL_CONFIG.json"
    path.write_text(json.dumps({"terminalId": 4, "terminalName": "Front Desk"}))
    terminal = load_terminal_config(tmp_path, ask=no_prompt)
    assert (terminal.terminal_id, terminal.terminal_name, terminal.path) == (4, "Front Desk", path)


def test_terminal_config_alternate_name(tmp_path):
    (tmp_path / "terminal-config.json").write_text(json.dumps({"terminalId": "7"}))
    terminal = load_terminal_config(tmp_path, ask=no_prompt)
    assert terminal.terminal_id == 7
    assert terminal.terminal_name == "Default Terminal"


@pytest.mark.parametrize("body", ["{not json", "[1, 2]", '{"terminalId": "abc"}'])
def test_unreadable_terminal_config_is_fatal(tmp_path, body):
    (tmp_path / "TERMINAL_CONFIG.json").write_text(body)
    with pytest.raises(ConfigurationError):
        load_terminal_config(tmp_path, ask=no_prompt)


def test_first_run_setup_saves_answers(tmp_path):
    answers = iter(["12", "Gym Entrance"])
    terminal = load_terminal_config(tmp_path, ask=lambda prompt: next(answers))
    assert (terminal.terminal_id, terminal.terminal_name) == (12, "Gym Entrance")
    saved = json.loads((tmp_path / "TERMINAL_CONFIG.json").read_text())
    assert saved == {"terminalId": 12, "terminalName": "Gym Entrance"}


def test_first_run_setup_defaults(tmp_path):
    terminal = load_terminal_config(tmp_path, ask=lambda prompt: "")
    assert (terminal.terminal_id, terminal.terminal_name) == (1, "New Scanner")
    assert terminal.path == tmp_path / "TERMINAL_CONFIG.json"


def test_first_run_without_terminal_uses_defaults(tmp_path):
    def closed_stdin(prompt):
        raise EOFError

    terminal = load_terminal_config(tmp_path, ask=closed_stdin)
    assert (terminal.terminal_id, terminal.terminal_name, terminal.path) == (1, "New Scanner", None)
    assert not (tmp_path / "TERMINAL_CONFIG.json").exists()
