"""Adapters — action handlers that change the host.

Public re-exports for convenient access.
"""

from provisioner.adapters.base import ActionHandler, Outcome
from provisioner.adapters.mock import MockHandler
from provisioner.adapters.registry import HandlerRegistry, default_registry

__all__ = [
    "ActionHandler",
    "HandlerRegistry",
    "MockHandler",
    "Outcome",
    "default_registry",
]
