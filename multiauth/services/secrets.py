"""Secret resolution for client secrets and signing keys.

Secret values are never hardcoded, logged or placed in error details.
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from multiauth.errors import MissingSecretError

logger = logging.getLogger(__name__)


class SecretProvider(Protocol):
    """Collaborator that resolves named secrets."""

    def get_required_secret(self, key: str, env_fallback: str | None = None) -> str:
        """Return the secret or raise ``MissingSecretError``."""
        ...


def sanitize_path(name: str, base_dir: Path) -> Path:
    """Resolve a secret file name inside ``base_dir``, rejecting traversal."""
    base = base_dir.resolve()
    target = (base / Path(name).name).resolve()

    try:
        target.relative_to(base)
    except ValueError:
        raise ValueError(f"Path traversal detected: {name} resolves outside {base}")

    return target


class StaticSecretProvider:
    """In-memory secrets, for tests and embedding."""

    def __init__(self, secrets: Mapping[str, str]):
        self._secrets = dict(secrets)

    def get_required_secret(self, key: str, env_fallback: str | None = None) -> str:
        value = self._secrets.get(key)
        if not value:
            raise MissingSecretError(key)
        return value


class EnvironmentSecretProvider:
    """Resolve secrets from the environment, then from a secrets directory.

    Lookup order for ``key``:
    1. environment variable ``env_fallback`` (or ``key.upper()``)
    2. file ``<secrets_dir>/<key>`` (Docker/Kubernetes mounted secrets)
    """

    def __init__(self, secrets_dir: Path | str | None = None):
        self.secrets_dir = Path(secrets_dir) if secrets_dir else None

    def get_required_secret(self, key: str, env_fallback: str | None = None) -> str:
        env_name = env_fallback or key.upper()
        value = os.environ.get(env_name, "").strip()
        if value:
            return value

        if self.secrets_dir is not None:
            try:
                secret_file = sanitize_path(key, self.secrets_dir)
                if secret_file.exists():
                    value = secret_file.read_text().strip()
                    if value:
                        logger.debug("Loaded secret %s from %s", key, self.secrets_dir)
                        return value
                    logger.warning("Secret file for %s is empty", key)
            except ValueError as e:
                logger.error("Invalid secret file path for %s: %s", key, e)
            except PermissionError as e:
                logger.error("Permission denied reading secret %s: %s", key, e)

        logger.error("Required secret %s could not be resolved", key)
        raise MissingSecretError(key)
