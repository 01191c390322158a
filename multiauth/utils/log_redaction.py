"""Utility for redacting sensitive data from logs."""

import logging
import re
from typing import Any

REDACTED = "***REDACTED***"

SENSITIVE_KEYS = {
    "password", "secret", "token", "code", "verifier", "nonce",
    "authorization", "bearer", "assertion", "private_key",
}

_JWT_PATTERN = re.compile(r"eyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]*")


def sanitize_for_log(value: Any) -> str:
    """Neutralize control characters so user input cannot forge log lines."""
    text = str(value)
    text = text.replace("\r\n", " ")
    return re.sub(r"[\r\n\t]", " ", text)


def mask_token(value: str | None, keep: int = 8) -> str:
    """Show only a short prefix of an opaque value (state, session id)."""
    if not value:
        return "<empty>"
    return f"{sanitize_for_log(value[:keep])}..."


def redact_sensitive_data(data: Any) -> Any:
    """
    Recursively redact sensitive data from various data structures.

    Args:
        data: Data to redact (dict, list, str, or primitive)

    Returns:
        Redacted copy of data
    """
    if isinstance(data, dict):
        return redact_dict_keys(data)
    elif isinstance(data, (list, tuple)):
        return type(data)(redact_sensitive_data(item) for item in data)
    elif isinstance(data, str):
        return _redact_string(data)
    else:
        return data


def redact_dict_keys(data: dict[str, Any]) -> dict[str, Any]:
    """
    Redact values whose keys look sensitive.

    Args:
        data: Dictionary to redact

    Returns:
        Dictionary with sensitive values replaced with "***REDACTED***"
    """
    if not isinstance(data, dict):
        return data

    redacted = {}
    for key, value in data.items():
        key_lower = str(key).lower()

        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            redacted[key] = REDACTED
        elif isinstance(value, (dict, list, tuple, str)):
            redacted[key] = redact_sensitive_data(value)
        else:
            redacted[key] = value

    return redacted


def _redact_string(text: str) -> str:
    """
    Redact patterns in strings that look like secrets.

    Patterns redacted:
    - Bearer tokens: "Bearer abc123..." -> "Bearer ***REDACTED***"
    - Basic auth: "Basic abc123..." -> "Basic ***REDACTED***"
    - Compact JWTs anywhere in the text
    - OAuth parameters in query strings and form bodies
    - JSON with sensitive keys: {"access_token": "foo"}
    """
    text = re.sub(
        r"(Bearer\s+)[A-Za-z0-9_\-\.~+/=]+",
        rf"\1{REDACTED}",
        text,
        flags=re.IGNORECASE,
    )

    text = re.sub(
        r"(Basic\s+)[A-Za-z0-9+/=]+",
        rf"\1{REDACTED}",
        text,
        flags=re.IGNORECASE,
    )

    text = _JWT_PATTERN.sub(REDACTED, text)

    text = re.sub(
        r"((?:^|[?&\s])(?:access_token|refresh_token|id_token|client_secret|code|"
        r"code_verifier|client_assertion|password)=)[^&\s]+",
        rf"\1{REDACTED}",
        text,
        flags=re.IGNORECASE,
    )

    text = re.sub(
        r'("(?:access_token|refresh_token|id_token|client_secret|code_verifier|'
        r'password|secret|authorization)":\s*")[^"]*(")',
        rf"\1{REDACTED}\2",
        text,
        flags=re.IGNORECASE,
    )

    return text


def redact_log_message(
    msg: str, *args: Any, **kwargs: Any
) -> tuple[str, tuple[Any, ...], dict[str, Any]]:
    """
    Redact sensitive data from log message and arguments.

    Args:
        msg: Log message format string
        *args: Positional arguments for log message
        **kwargs: Keyword arguments for log message

    Returns:
        Tuple of (redacted_msg, redacted_args, redacted_kwargs)
    """
    redacted_msg = _redact_string(msg)
    redacted_args = tuple(redact_sensitive_data(arg) for arg in args)
    redacted_kwargs = {k: redact_sensitive_data(v) for k, v in kwargs.items()}
    return redacted_msg, redacted_args, redacted_kwargs


class RedactionFilter(logging.Filter):
    """Logging filter that scrubs tokens and secrets from every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            args = record.args if isinstance(record.args, tuple) else ()
            record.msg, redacted_args, _ = redact_log_message(record.msg, *args)
            if args:
                record.args = redacted_args
        return True
