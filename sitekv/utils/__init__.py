# sitekv/utils/__init__.py
"""Utility functions for sitekv."""

from .environment import (
    load_env_file,
    validate_env_vars,
    parse_bool,
)
from .security import (
    SecretMasker,
    SecureLogger,
    default_masker,
    get_secure_logger,
    mask_secrets,
)

__all__ = [
    "load_env_file",
    "validate_env_vars",
    "parse_bool",
    "SecretMasker",
    "SecureLogger",
    "default_masker",
    "get_secure_logger",
    "mask_secrets",
]
