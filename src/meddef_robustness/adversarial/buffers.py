"""
Scoped lifetime for intermediate numeric buffers.

Some numeric runtimes keep tensors in accelerator memory that is not
reclaimed automatically. Models backed by such a runtime expose a
``release(buffer)`` hook; every gradient, mask, normalized map and
perturbation created while attacking is tracked in a BufferScope and
released exactly once when the scope exits, whether it exits normally or
through an exception. Buffers handed back to the caller are detached from
the scope with ``keep``.

Usage:
    with BufferScope(model) as scope:
        gradient = scope.track(compute_gradient(model, loss, image))
        ...
"""

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class BufferScope:
    """Tracks intermediate buffers and releases them on exit."""

    def __init__(self, model: Any = None) -> None:
        hook = getattr(model, "release", None)
        self._release: Callable[[Any], None] | None = hook if callable(hook) else None
        self._buffers: list[Any] = []
        self.released = 0

    def track(self, buffer: Any) -> Any:
        """Register a buffer for release and return it unchanged."""
        if not any(buffer is tracked for tracked in self._buffers):
            self._buffers.append(buffer)
        return buffer

    def keep(self, buffer: Any) -> Any:
        """Detach a buffer that outlives the scope (returned to the caller)."""
        self._buffers = [tracked for tracked in self._buffers if tracked is not buffer]
        return buffer

    def close(self) -> None:
        """Release all tracked buffers, most recent first."""
        buffers, self._buffers = self._buffers, []
        for buffer in reversed(buffers):
            if self._release is not None:
                self._release(buffer)
            self.released += 1
        logger.debug(f"Released {len(buffers)} intermediate buffers")

    def __enter__(self) -> "BufferScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
