# sitekv/utils/environment.py
"""Reading credentials from .env files and the process environment."""

import os
from typing import Dict, List, Mapping, Optional, Tuple

_TRUE_VALUES = ("1", "true", "yes", "on")


def _parse_line(raw: str) -> Optional[Tuple[str, str]]:
    """Split one .env line into (name, value); None for blanks and comments."""
    text = raw.strip()
    if not text or text.startswith("#"):
        return None
    if text.startswith("export "):
        text = text[len("export "):].lstrip()
    name, sep, value = text.partition("=")
    if not sep:
        raise ValueError(f"Invalid environment file format: {text}")
    return name.strip(), value.strip().strip('"\'')


def load_env_file(file_path: str) -> Dict[str, str]:
    """Read ``NAME=value`` pairs from a .env file.

    A missing file yields an empty dict. Values may be quoted and lines may
    carry a shell ``export`` prefix.

    Raises:
        ValueError: if the file cannot be read or a line has no ``=``
    """
    if not os.path.exists(file_path):
        return {}

    try:
        with open(file_path, "r") as f:
            pairs = [_parse_line(raw) for raw in f]
    except OSError as e:
        raise ValueError(f"Error reading environment file: {e}")

    return dict(pair for pair in pairs if pair is not None)


def validate_env_vars(required_vars: List[str], env: Optional[Mapping[str, str]] = None) -> List[str]:
    """Names from ``required_vars`` that are unset or empty in ``env`` (default ``os.environ``)."""
    source = os.environ if env is None else env
    return [name for name in required_vars if not source.get(name)]


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Interpret the usual truthy spellings found in env files and option tables."""
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUE_VALUES
