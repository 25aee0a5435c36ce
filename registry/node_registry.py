"""
Registry: Maps node type/sub type pairs to handlers.

Responsibility:
- Maintain mapping of (type, sub_type) -> handler
- Fall back to a (type, "*") wildcard handler when registered
- Resolve opaque credential references for handlers that need them
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from shared.errors import NodeExecutionError, UnknownNodeType

logger = logging.getLogger(__name__)

WILDCARD = "*"

# A handler receives a ``NodeContext`` and returns a ``NodeResult``, plain data,
# or an awaitable of either. Raising marks the attempt as failed.
NodeHandler = Callable[[Any], Any]


class NodeHandlerRegistry:
    """Registry for node handlers."""

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], NodeHandler] = {}

    def register(self, node_type: str, sub_type: str, handler: NodeHandler) -> None:
        """Register a handler for ``node_type/sub_type`` (``sub_type="*"`` matches any)."""
        key = (str(node_type).strip(), str(sub_type).strip() or WILDCARD)
        if not key[0]:
            raise ValueError("node_type must not be empty")
        self._handlers[key] = handler
        logger.info("Registered node handler: %s/%s → %s", key[0], key[1], getattr(handler, "__name__", handler))

    def handler(self, node_type: str, sub_type: str) -> Callable[[NodeHandler], NodeHandler]:
        """Decorator form of ``register``."""

        def decorator(fn: NodeHandler) -> NodeHandler:
            self.register(node_type, sub_type, fn)
            return fn

        return decorator

    def resolve(self, node_type: str, sub_type: str) -> NodeHandler:
        """Resolve a handler or raise ``UnknownNodeType``."""
        handler = self._handlers.get((node_type, sub_type or WILDCARD))
        if handler is None:
            handler = self._handlers.get((node_type, WILDCARD))
        if handler is None:
            raise UnknownNodeType(node_type, sub_type)
        return handler

    def has_handler(self, node_type: str, sub_type: str) -> bool:
        try:
            self.resolve(node_type, sub_type)
        except UnknownNodeType:
            return False
        return True

    @property
    def registered_types(self) -> list[str]:
        return [f"{node_type}/{sub_type}" for node_type, sub_type in self._handlers]


@runtime_checkable
class CredentialResolver(Protocol):
    """Supplies decrypted connection material for an opaque credential reference."""

    def resolve(self, credential_id: str) -> dict[str, Any]: ...


class StaticCredentialResolver:
    """Resolver over an in-memory mapping of already-decrypted credentials."""

    def __init__(self, credentials: Mapping[str, Mapping[str, Any]] | None = None):
        self._credentials = {str(key): dict(value) for key, value in (credentials or {}).items()}

    def resolve(self, credential_id: str) -> dict[str, Any]:
        material = self._credentials.get(credential_id)
        if material is None:
            raise NodeExecutionError(f"Credential '{credential_id}' is not available")
        return dict(material)
