# src/gantry/engine/credentials.py
"""CredentialScope - structural guarantee that stage secrets are released.

Credentials are resolved when a stage is entered and injected into an
env overlay that only that stage's steps see. The overlay is cleared in
``__exit__`` on every exit path (success, failure, timeout), so by the time
the sequencer regains control no later stage can observe the values.

Secrets are never written to os.environ and never merged into the run
environment.
"""

from __future__ import annotations

from collections.abc import Sequence
from types import TracebackType

from gantry.contracts.errors import CredentialResolutionError, OrchestrationInvariantError
from gantry.contracts.pipeline import CredentialBinding
from gantry.contracts.protocols import SecretRef, SecretStore
from gantry.core.logging import get_logger

logger = get_logger(__name__)

MASK = "****"


class SecretMasker:
    """Replaces known secret values in captured output."""

    __slots__ = ("_values",)

    def __init__(self, values: Sequence[str] = ()) -> None:
        # Longest first so a secret containing another is masked whole
        self._values = sorted({value for value in values if value}, key=len, reverse=True)

    def __bool__(self) -> bool:
        return bool(self._values)

    def mask(self, text: str) -> str:
        for value in self._values:
            text = text.replace(value, MASK)
        return text


class CredentialScope:
    """Context manager that binds credentials for exactly one stage.

    Usage::

        with CredentialScope(store, stage.credentials, stage_name=stage.name) as scope:
            body.run(env={**run_env, **scope.env}, masker=scope.masker)

    Raises CredentialResolutionError from ``__enter__`` if any binding cannot
    be resolved; bindings resolved before the failure are released first.
    """

    __slots__ = ("_bindings", "_entered", "_env", "_masker", "_refs", "_released", "_stage_name", "_store")

    def __init__(self, store: SecretStore, bindings: Sequence[CredentialBinding], *, stage_name: str) -> None:
        self._store = store
        self._bindings = tuple(bindings)
        self._stage_name = stage_name
        self._env: dict[str, str] = {}
        self._refs: list[SecretRef] = []
        self._masker = SecretMasker()
        self._entered = False
        self._released = False

    # -- context manager protocol ------------------------------------------

    def __enter__(self) -> CredentialScope:
        if self._entered:
            raise OrchestrationInvariantError(f"CredentialScope for stage '{self._stage_name}' entered twice")
        self._entered = True

        for binding in self._bindings:
            try:
                value, ref = self._store.resolve(binding.credential_id)
            except Exception as exc:
                self._release()
                raise CredentialResolutionError(binding.credential_id, str(exc)) from exc
            self._env[binding.variable] = value
            self._refs.append(ref)

        self._masker = SecretMasker(list(self._env.values()))
        if self._bindings:
            logger.debug(
                "Credentials bound",
                stage=self._stage_name,
                credentials=[ref.name for ref in self._refs],
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self._release()

    def _release(self) -> None:
        if self._released:
            return
        # Clear in place: any step env still referencing the overlay loses the values too
        self._env.clear()
        self._released = True
        if self._bindings:
            logger.debug("Credentials released", stage=self._stage_name)

    # -- public API --------------------------------------------------------

    @property
    def env(self) -> dict[str, str]:
        """The live credential overlay (empty once released)."""
        return self._env

    @property
    def masker(self) -> SecretMasker:
        return self._masker

    @property
    def refs(self) -> tuple[SecretRef, ...]:
        """Which credentials were bound (names and sources, never values)."""
        return tuple(self._refs)

    @property
    def released(self) -> bool:
        return self._released
