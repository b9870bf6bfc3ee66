"""
Handler registry — central dispatch from step kind to action handler.

The engine never calls handlers directly, always through the registry.
Dispatch never raises: unknown kinds, invalid params and unexpected
handler exceptions all come back as failure outcomes.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from provisioner.adapters.base import ActionHandler, Outcome
from provisioner.core.models.step import StepDescriptor

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Registry and dispatcher for action handlers.

    Features:
        - Register/unregister handlers by kind
        - Mock mode: every kind is served by one stand-in handler
        - Perform steps through the appropriate handler
    """

    def __init__(self, mock_handler: ActionHandler | None = None):
        self._handlers: dict[str, ActionHandler] = {}
        self._mock_handler = mock_handler

    @property
    def mock_mode(self) -> bool:
        return self._mock_handler is not None

    def register(self, handler: ActionHandler) -> None:
        kind = handler.kind
        if kind in self._handlers:
            logger.warning("Overwriting existing handler: %s", kind)
        self._handlers[kind] = handler
        logger.debug("Registered handler: %s", kind)

    def unregister(self, kind: str) -> None:
        self._handlers.pop(kind, None)

    def get(self, kind: str) -> ActionHandler | None:
        if self._mock_handler is not None:
            return self._mock_handler
        return self._handlers.get(kind)

    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    def perform(self, step: StepDescriptor) -> Outcome:
        """Run one step through its handler and return the outcome.

        Args:
            step: The step to perform.

        Returns:
            Outcome, with ``duration_ms`` in its metadata.
        """
        handler = self.get(step.kind)
        if handler is None:
            return Outcome.failure(f"No handler registered for kind '{step.kind}'")

        params = dict(step.params)
        try:
            is_valid, error_msg = handler.validate(params)
        except Exception as e:
            return Outcome.failure(f"Validation error: {e}")
        if not is_valid:
            return Outcome.failure(f"Validation failed: {error_msg}")

        start = time.monotonic()
        try:
            outcome = handler.perform(params)
        except Exception as e:
            # Handlers should never raise, but the engine must see an outcome
            logger.error("Handler %s raised on step %s: %s", step.kind, step.id, e)
            outcome = Outcome.failure(f"Unexpected error: {e}")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        outcome.metadata.setdefault("duration_ms", elapsed_ms)
        return outcome


def default_registry(
    mock: bool = False,
    fetch_attempts: int | None = None,
    fetch_backoff: float | None = None,
) -> HandlerRegistry:
    """Build a registry with the built-in handlers for every step kind.

    Args:
        mock: Serve every kind with a MockHandler (nothing touches the host).
        fetch_attempts: Attempt budget for the fetch-file handler.
        fetch_backoff: Base backoff delay (seconds) for the fetch-file handler.
    """
    from provisioner.adapters.mock import MockHandler
    from provisioner.adapters.network.download import FetchFileHandler
    from provisioner.adapters.packages.install import InstallPackageHandler
    from provisioner.adapters.shell.command import RunCommandHandler
    from provisioner.adapters.shell.environment import SetEnvHandler

    registry = HandlerRegistry(mock_handler=MockHandler() if mock else None)

    fetch_kwargs: dict[str, Any] = {}
    if fetch_attempts is not None:
        fetch_kwargs["attempts"] = fetch_attempts
    if fetch_backoff is not None:
        fetch_kwargs["base_delay"] = fetch_backoff

    registry.register(InstallPackageHandler())
    registry.register(FetchFileHandler(**fetch_kwargs))
    registry.register(SetEnvHandler())
    registry.register(RunCommandHandler())
    return registry
