"""
Runtime settings: shared secret and Supabase credentials from the
environment, terminal identity from the local terminal config file.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from . import config
from .errors import ConfigurationError

log = logging.getLogger("yamen_bridge.settings")


@dataclass(frozen=True)
class TerminalConfig:
    terminal_id: int
    terminal_name: str
    path: Path | None = None


@dataclass(frozen=True)
class StoreSettings:
    url: str
    key: str


def load_secret(environ=None) -> str:
    environ = os.environ if environ is None else environ
    secret = environ.get(config.SECRET_ENV, "")
    if not secret:
        raise ConfigurationError(f"{config.SECRET_ENV} environment variable is required")
    if len(secret) < config.MIN_SECRET_LENGTH:
        raise ConfigurationError(
            f"{config.SECRET_ENV} must be at least {config.MIN_SECRET_LENGTH} characters"
        )
    return secret


def load_store_settings(environ=None) -> StoreSettings:
    environ = os.environ if environ is None else environ
    url = environ.get(config.SUPABASE_URL_ENV, "").strip()
    key = environ.get(config.SUPABASE_KEY_ENV, "").strip()
    missing = [name for name, value in
               ((config.SUPABASE_URL_ENV, url), (config.SUPABASE_KEY_ENV, key)) if not value]
    if missing:
        raise ConfigurationError(f"Missing environment variables: {', '.join(missing)}")
    return StoreSettings(url=url, key=key)


def _parse_terminal_file(path: Path) -> TerminalConfig:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Failed to read terminal config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Terminal config {path} must be a JSON object")
    try:
        terminal_id = int(data.get("terminalId") or config.DEFAULT_TERMINAL_ID)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid terminalId in {path}: {data.get('terminalId')!r}") from e
    terminal_name = str(data.get("terminalName") or "Default Terminal")
    return TerminalConfig(terminal_id, terminal_name, path)


def _first_run_setup(path: Path, ask) -> TerminalConfig:
    log.info("No terminal configuration found. Starting first-time setup.")
    terminal_id = config.DEFAULT_TERMINAL_ID
    terminal_name = config.DEFAULT_TERMINAL_NAME
    try:
        id_input = ask(f"Enter Terminal ID (default: {terminal_id}): ").strip()
        if id_input:
            try:
                terminal_id = int(id_input)
            except ValueError:
                log.warning("Invalid terminal id %r, using %d", id_input, terminal_id)
        name_input = ask(f"Enter Terminal Name (default: {terminal_name}): ").strip()
        if name_input:
            terminal_name = name_input
    except (EOFError, OSError) as e:
        log.warning("Interactive setup unavailable (%s), using defaults", e or type(e).__name__)
        return TerminalConfig(terminal_id, terminal_name, None)

    body = {"terminalId": terminal_id, "terminalName": terminal_name}
    try:
        path.write_text(json.dumps(body, indent=2), encoding="utf-8")
        log.info("Config saved to: %s", path)
    except OSError as e:
        log.warning("Could not save terminal config to %s: %s", path, e)
        return TerminalConfig(terminal_id, terminal_name, None)
    return TerminalConfig(terminal_id, terminal_name, path)


def load_terminal_config(directory=None, ask=input) -> TerminalConfig:
    """Load the terminal config file, or capture it interactively on first run."""
    directory = Path(directory or Path.cwd())
    candidates = [directory / name for name in config.TERMINAL_CONFIG_FILES]
    for path in candidates:
        if path.exists():
            terminal = _parse_terminal_file(path)
            log.info("Terminal config loaded from: %s", path)
            return terminal
    return _first_run_setup(candidates[0], ask)
