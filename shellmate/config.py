"""Configuration file loading and merging for shellmate.

Reads TOML config from ~/.config/shellmate/config.toml (global) and
<base_dir>/shellmate.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "max_rounds": int,
    "command_timeout": int,
    "shell": str,
    "system_prompt": str,
    "no_system_prompt": bool,
    "db_path": str,
    "no_db": bool,
    "host": str,
    "port": int,
    "color": bool,
    "quiet": bool,
}

PROVIDERS = ("openai", "lmstudio", "openrouter")

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "openai",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 4096,
    "temperature": None,
    "max_rounds": 10,
    "command_timeout": 30,
    "shell": "/bin/bash",
    "system_prompt": None,
    "no_system_prompt": False,
    "db_path": None,
    "no_db": False,
    "host": "127.0.0.1",
    "port": 8080,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "shellmate"
    return Path.home() / ".config" / "shellmate"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and mutual exclusions in a parsed config dict.

    Raises ConfigError for type mismatches or invalid combinations.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: 'provider' must be one of {', '.join(PROVIDERS)}, "
            f"got {config['provider']!r}"
        )
    for key in ("max_rounds", "command_timeout", "max_output_tokens", "port"):
        if key in config and config[key] < 1:
            raise ConfigError(f"{source}: {key!r} must be >= 1")

    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve a relative db_path against the config file's directory."""
    if "db_path" in config:
        p = Path(config["db_path"]).expanduser()
        config["db_path"] = str(p if p.is_absolute() else config_dir / p)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "shellmate.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    merged = {**global_config, **project_config}

    # Could conflict across files
    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill argparse values the CLI left unset from config, then from defaults."""

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert a config dict to Session constructor kwargs.

    quiet -> verbose (inverted); no_db clears db_path. Drops keys that
    aren't Session concerns (color, host, port).
    """
    kwargs = {}
    for key, value in config.items():
        if key in ("color", "host", "port", "no_db"):
            continue
        if key == "quiet":
            kwargs["verbose"] = not value
        else:
            kwargs[key] = value
    if config.get("no_db"):
        kwargs["db_path"] = None
    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# shellmate configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/shellmate.toml' if project else '~/.config/shellmate/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "openai"            # "openai" | "lmstudio" | "openrouter"',
        '# model = "gpt-4o"',
        '# api_key = "sk-..."              # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 4096",
        "# temperature = 0.7",
        "",
        "# --- Agent behaviour ---",
        "# max_rounds = 10                 # LLM calls per user message",
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        "",
        "# --- Commands ---",
        '# shell = "/bin/bash"',
        "# command_timeout = 30            # seconds, foreground commands only",
        "",
        "# --- Storage ---",
        '# db_path = ".shellmate/agent.db"',
        "# no_db = false",
        "",
        "# --- Server ---",
        '# host = "127.0.0.1"',
        "# port = 8080",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
