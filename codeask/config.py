"""Configuration file loading and merging for codeask.

Reads TOML config from ~/.config/codeask/config.toml (global) and
<base_dir>/codeask.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .provider import PROVIDERS
from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

PLAN_MODES = ("text", "structured", "off")
TOOL_POLICIES = ("ask", "allow", "never")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "temperature": (int, float),
    "max_output_tokens": int,
    "max_context_tokens": int,
    "max_rounds": int,
    "plan": str,
    "critic": bool,
    "allow_writes": bool,
    "tool_policy": str,
    "allowed_commands": list,
    "cache_ttl": (int, float),
    "history": bool,
    "notes": bool,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"allowed_commands"}

_CHOICES: dict[str, tuple[str, ...]] = {
    "provider": PROVIDERS,
    "plan": PLAN_MODES,
    "tool_policy": TOOL_POLICIES,
}

# Minimum accepted value for numeric keys
_MINIMUMS: dict[str, float] = {
    "max_output_tokens": 1,
    "max_context_tokens": 1,
    "max_rounds": 1,
    "cache_ttl": 0,
    "temperature": 0,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "lmstudio",
    "model": None,
    "api_key": None,
    "base_url": None,
    "temperature": None,
    "max_output_tokens": 4096,
    "max_context_tokens": None,
    "max_rounds": 15,
    "plan": "text",
    "critic": True,
    "allow_writes": False,
    "tool_policy": "ask",
    "allowed_commands": None,
    "cache_ttl": 300.0,
    "history": True,
    "notes": True,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "codeask"
    return Path.home() / ".config" / "codeask"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and allowed values in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

        if key in _CHOICES and value not in _CHOICES[key]:
            allowed = ", ".join(_CHOICES[key])
            raise ConfigError(f"{source}: {key!r} must be one of {allowed}, got {value!r}")

        if key in _MINIMUMS and value < _MINIMUMS[key]:
            raise ConfigError(f"{source}: {key!r} must be >= {_MINIMUMS[key]}, got {value}")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    # Walk up from config file looking for .git
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

    # Strip unknown keys after warning (keep only known ones for downstream)
    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "codeask.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    # Merge: project overrides global (shallow)
    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue  # Already handled above
        if _is_unset(key):
            setattr(args, key, value)

    # Sweep: replace remaining sentinels with hardcoded defaults
    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)

    # --allowed-commands arrives as "ls,git"; config gives a list
    if isinstance(args.allowed_commands, str):
        args.allowed_commands = [
            c.strip() for c in args.allowed_commands.split(",") if c.strip()
        ]


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    quiet -> verbose (inverted); color is a terminal concern and is dropped.
    """
    kwargs = {}
    for key, value in config.items():
        if key == "color":
            continue
        if key == "quiet":
            kwargs["verbose"] = not value
        else:
            kwargs[key] = value
    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# codeask configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/codeask.toml' if project else '~/.config/codeask/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "lmstudio"          # ' + " | ".join(f'"{p}"' for p in PROVIDERS),
        '# model = "qwen2.5-coder-7b-instruct"',
        '# api_key = "sk-..."               # prefer env vars; this is a fallback',
        '# base_url = "http://127.0.0.1:1234"',
        "",
        "# --- Generation parameters ---",
        "# temperature = 0.2",
        "# max_output_tokens = 4096",
        "# max_context_tokens = 32768",
        "",
        "# --- Agent behaviour ---",
        "# max_rounds = 15",
        '# plan = "text"                  # "text" | "structured" | "off"',
        "# critic = true",
        "# cache_ttl = 300                # seconds",
        "",
        "# --- Write tools ---",
        "# allow_writes = false",
        '# tool_policy = "ask"            # "ask" | "allow" | "never"',
        '# allowed_commands = ["ls", "git"]',
        "",
        "# --- Persistence ---",
        "# history = true                 # .codeask/HISTORY.md",
        "# notes = true                   # CODEASK.md",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
