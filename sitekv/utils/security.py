"""Secret masking for log lines, exception text and HTTP headers."""

import re
import logging
import threading
from typing import Any, Dict, List, Optional, Pattern, Tuple, Union

MASK = '***MASKED***'

# (pattern, replacement) pairs applied case-insensitively
SECRET_PATTERNS = [
    # Authorization: Bearer <token>
    (r'(bearer\s+)([a-zA-Z0-9_.-]{20,})', r'\1' + MASK),
    # Cloudflare global API key and API tokens passed as headers, args or env lines
    (r'(x-auth-key[:=]\s*["\']?)([a-zA-Z0-9_-]{20,})', r'\1' + MASK),
    (r'(api[_-]?token[_-]?[:=]\s*["\']?)([a-zA-Z0-9_.-]{20,})', r'\1' + MASK),
    (r'(api[_-]?key[_-]?=?["\']?)([a-zA-Z0-9_-]{20,})', r'\1' + MASK),
    (r'(token[_-]?=?["\']?)([a-zA-Z0-9_.-]{20,})', r'\1' + MASK),
    (r'(password[_-]?=?["\']?)([^\s"\']{8,})', r'\1' + MASK),
    (r'(secret[_-]?=?["\']?)([^\s"\']{8,})', r'\1' + MASK),
]

SENSITIVE_HEADERS = frozenset({
    'authorization', 'x-auth-key', 'x-auth-email', 'cookie', 'x-access-token',
})


class SecretMasker:
    """Replaces known secret shapes, plus any registered literal, with MASK."""

    def __init__(self, additional_patterns: Optional[List[Tuple[str, str]]] = None):
        """
        Args:
            additional_patterns: Extra (regex, replacement) pairs
        """
        self._patterns: List[Tuple[Pattern, str]] = [
            (re.compile(pattern, re.IGNORECASE), replacement)
            for pattern, replacement in SECRET_PATTERNS + list(additional_patterns or [])
        ]
        self._literals: Dict[str, int] = {}
        self._literal_re: Optional[Pattern] = None
        self._lock = threading.Lock()

    def register_secret(self, value: str) -> None:
        """
        Mask an exact value, whatever its shape, until it is unregistered.

        Registrations are counted: two runs sharing a token keep it masked
        until both have unregistered it.
        """
        if not value:
            return
        with self._lock:
            self._literals[value] = self._literals.get(value, 0) + 1
            self._rebuild()

    def unregister_secret(self, value: str) -> None:
        with self._lock:
            remaining = self._literals.get(value, 0) - 1
            if remaining > 0:
                self._literals[value] = remaining
            else:
                self._literals.pop(value, None)
            self._rebuild()

    def _rebuild(self) -> None:
        if not self._literals:
            self._literal_re = None
            return
        # Longest first so a token containing another registered value is fully masked
        ordered = sorted(self._literals, key=len, reverse=True)
        self._literal_re = re.compile('|'.join(re.escape(value) for value in ordered))

    def mask_string(self, text: Any) -> str:
        """Return ``text`` as a string with every secret replaced."""
        masked = text if isinstance(text, str) else str(text)
        literal_re = self._literal_re
        if literal_re is not None:
            masked = literal_re.sub(MASK, masked)
        for pattern, replacement in self._patterns:
            masked = pattern.sub(replacement, masked)
        return masked

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask string values in a (possibly nested) dictionary."""
        if not isinstance(data, dict):
            return data
        return {key: self._mask_value(value) for key, value in data.items()}

    def _mask_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.mask_string(value)
        if isinstance(value, dict):
            return self.mask_dict(value)
        if isinstance(value, list):
            return [self._mask_value(item) for item in value]
        return value

    def mask_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        """Headers safe to log: credential headers blanked, the rest pattern-masked."""
        return {
            name: MASK if name.lower() in SENSITIVE_HEADERS else self.mask_string(value)
            for name, value in headers.items()
        }


default_masker = SecretMasker()


def mask_secrets(data: Union[str, Dict[str, Any]]) -> Union[str, Dict[str, Any]]:
    """Mask a string or dictionary with the process-wide masker."""
    if isinstance(data, str):
        return default_masker.mask_string(data)
    if isinstance(data, dict):
        return default_masker.mask_dict(data)
    return data


class SecureLogger:
    """Logger wrapper that masks every message before it reaches a handler."""

    def __init__(self, logger: logging.Logger, masker: Optional[SecretMasker] = None):
        self.logger = logger
        self.masker = masker or default_masker

    def _format(self, msg: str, args: tuple) -> str:
        if args:
            safe_args = tuple(self.masker.mask_string(arg) for arg in args)
            try:
                msg = msg % safe_args
            except (TypeError, ValueError):
                msg = f"{msg} {' '.join(safe_args)}"
        return self.masker.mask_string(msg)

    def _log(self, level: int, msg: str, args: tuple, kwargs: Dict[str, Any]) -> None:
        # Filtered levels are never formatted or masked
        if self.logger.isEnabledFor(level):
            self.logger.log(level, self._format(msg, args), **kwargs)

    def isEnabledFor(self, level: int) -> bool:
        return self.logger.isEnabledFor(level)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, args, kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, args, kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, args, kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, args, kwargs)


def get_secure_logger(name: str) -> SecureLogger:
    """Masking logger for a module, e.g. ``get_secure_logger(__name__)``."""
    return SecureLogger(logging.getLogger(name))


def ensure_secure_logger(logger: Union[logging.Logger, SecureLogger, None], name: str) -> SecureLogger:
    """Wrap an injected logger so everything it emits is masked."""
    if logger is None:
        return get_secure_logger(name)
    if isinstance(logger, SecureLogger):
        return logger
    return SecureLogger(logger)
