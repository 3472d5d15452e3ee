# src/gantry/core/security/__init__.py
"""Security utilities for Gantry.

Exports:
- SecretNotFoundError: Raised when no backend holds a credential
- Secret store backends: EnvSecretStore, MappingSecretStore, CachedSecretStore, CompositeSecretStore
"""

from gantry.core.security.secret_store import (
    CachedSecretStore,
    CompositeSecretStore,
    EnvSecretStore,
    MappingSecretStore,
    SecretNotFoundError,
    env_var_name,
)

__all__ = [
    "CachedSecretStore",
    "CompositeSecretStore",
    "EnvSecretStore",
    "MappingSecretStore",
    "SecretNotFoundError",
    "env_var_name",
]
