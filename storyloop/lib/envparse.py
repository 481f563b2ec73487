"""
KEY=value settings without a shell.

storyloop.env is read here rather than sourced, and values that would do
something in a shell (substitution, chaining, pipes) are refused outright.
The same check applies to STORYLOOP_* overrides from the environment.
"""

import os
import re
from pathlib import Path

# Command substitution, ${...} expansion, chaining and pipes
_SHELL_SYNTAX = re.compile(r"`|\$\(|\$\{|;|&&|\|")

KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")

_QUOTES = ('"', "'")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] in _QUOTES and value[-1] == value[0]:
        return value[1:-1]
    return value


def _checked(value: str, where: str) -> str:
    if _SHELL_SYNTAX.search(value):
        raise ValueError(f"{where}: Forbidden pattern in value")
    return value


def parse_env_line(line: str, lineno: int) -> tuple[str, str] | None:
    """(key, value) for one line, or None for blanks and comments."""
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    # Tolerate "export KEY=value" so the file can still be sourced by hand
    if line.startswith("export "):
        line = line[len("export "):].lstrip()

    key, sep, value = line.partition("=")
    if not sep:
        raise ValueError(f"Line {lineno}: Invalid syntax (no '=')")
    key = key.strip()
    if not KEY_PATTERN.match(key):
        raise ValueError(f"Line {lineno}: Invalid key '{key}'")
    return key, _checked(_unquote(value.strip()), f"Line {lineno}")


def load_env(filepath: str) -> dict:
    """
    Parse an env file into a dict. Later keys win.

    Raises:
        FileNotFoundError: if file doesn't exist
        ValueError: if syntax invalid or forbidden pattern found
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Env file not found: {filepath}")

    pairs = (parse_env_line(line, n) for n, line in enumerate(path.read_text().splitlines(), 1))
    return dict(pair for pair in pairs if pair is not None)


def env_overrides(prefix: str, environ: dict | None = None) -> dict:
    """
    Settings from the process environment that carry prefix.

    STORYLOOP_MAX_ITERATIONS=5 with prefix "STORYLOOP_" becomes
    {"MAX_ITERATIONS": "5"}.
    """
    environ = os.environ if environ is None else environ
    return {
        name[len(prefix):]: _checked(value, f"Environment variable {name}")
        for name, value in environ.items()
        if name.startswith(prefix) and KEY_PATTERN.match(name[len(prefix):])
    }
