"""Secret store backends for credential bindings.

Provides a unified interface for resolving credentials from multiple
backends (environment variables, in-memory mappings) with optional caching.

Usage:
    from gantry.core.security import CompositeSecretStore, EnvSecretStore, MappingSecretStore

    store = CompositeSecretStore(backends=[
        MappingSecretStore({"scanner-token": "..."}),
        EnvSecretStore(prefix="GANTRY_SECRET_"),
    ])

    value, ref = store.resolve("scanner-token")
    # ref records name and source for the run record, never the value
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping

from gantry.contracts.protocols import SecretRef, SecretStore


class SecretNotFoundError(Exception):
    """Raised when a secret cannot be found in any backend."""

    pass


_NON_ENV_CHARS = re.compile(r"[^A-Z0-9_]")


def env_var_name(credential_id: str, prefix: str = "") -> str:
    """Map a credential id like 'scanner-token' to SCANNER_TOKEN (with prefix)."""
    return prefix + _NON_ENV_CHARS.sub("_", credential_id.upper())


class EnvSecretStore:
    """Resolve credentials from environment variables.

    The credential id is upper-cased and non-alphanumerics become
    underscores: with prefix "GANTRY_SECRET_", "scanner-token" is read from
    GANTRY_SECRET_SCANNER_TOKEN.
    """

    def __init__(self, prefix: str = "", environ: Mapping[str, str] | None = None) -> None:
        self._prefix = prefix
        self._environ = environ

    def resolve(self, credential_id: str) -> tuple[str, SecretRef]:
        """Resolve a credential from the environment.

        Raises:
            SecretNotFoundError: If the env var is not set or is empty
        """
        environ = self._environ if self._environ is not None else os.environ
        name = env_var_name(credential_id, self._prefix)
        value = environ.get(name)

        if value is None or value == "":
            raise SecretNotFoundError(f"Environment variable '{name}' not set or empty")

        return value, SecretRef(name=credential_id, source="env")


class MappingSecretStore:
    """Resolve credentials from an in-memory mapping (tests, embedding)."""

    def __init__(self, secrets: Mapping[str, str]) -> None:
        self._secrets = dict(secrets)

    def resolve(self, credential_id: str) -> tuple[str, SecretRef]:
        if credential_id not in self._secrets:
            raise SecretNotFoundError(f"Credential '{credential_id}' not present in mapping store")
        return self._secrets[credential_id], SecretRef(name=credential_id, source="mapping")


class CachedSecretStore:
    """Caching wrapper for any SecretStore.

    Successful lookups are cached. Failed lookups (SecretNotFoundError) are
    NOT cached so a fixed configuration is picked up on the next attempt.
    """

    def __init__(self, inner: SecretStore) -> None:
        self._inner = inner
        self._cache: dict[str, tuple[str, SecretRef]] = {}

    def resolve(self, credential_id: str) -> tuple[str, SecretRef]:
        if credential_id in self._cache:
            return self._cache[credential_id]

        result = self._inner.resolve(credential_id)
        self._cache[credential_id] = result
        return result

    def clear_cache(self) -> None:
        """Clear the cache."""
        self._cache.clear()


class CompositeSecretStore:
    """Resolve credentials from multiple backends in priority order.

    Only SecretNotFoundError triggers fallback to the next backend; any
    other backend failure propagates.
    """

    def __init__(self, backends: list[SecretStore]) -> None:
        if not backends:
            raise ValueError("CompositeSecretStore requires at least one backend")
        self._backends = backends

    def resolve(self, credential_id: str) -> tuple[str, SecretRef]:
        """Resolve a credential, trying backends in order.

        Raises:
            SecretNotFoundError: If no backend has the credential
        """
        for backend in self._backends:
            try:
                return backend.resolve(credential_id)
            except SecretNotFoundError:
                continue

        raise SecretNotFoundError(f"Credential '{credential_id}' not found in any backend")
