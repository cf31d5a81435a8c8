"""context.py - Per-context recording state for the interception engine.

ContextManager holds one piece of per-context state: whether recording is
suspended. The hook wrappers suspend recording while they capture receivers,
arguments and return values, so that a ``__str__`` which itself calls a
hooked method cannot produce nested events or recurse back into capture.

The flag is stored in a ``contextvars.ContextVar``, which isolates it across
threads and asyncio Tasks without any explicit locking. A suspension in one
thread never hides the calls made by another.
"""

import contextvars
from contextlib import contextmanager
from typing import Iterator


class ContextManager:
    """Tracks whether recording is suspended in the current context.

    This class is a stateless facade over a module-level ``ContextVar``.
    Multiple instances can coexist because they all share the same
    underlying variable.

    Attributes:
        _suspended (ContextVar[bool]): True while instrumentation code is
            running on behalf of a hooked call in this context.

    Example:
        >>> ctx = ContextManager()
        >>> ctx.is_suspended()
        False
        >>> with ctx.suspended():
        ...     ctx.is_suspended()
        True
        >>> ctx.is_suspended()
        False
    """

    _suspended: contextvars.ContextVar[bool] = contextvars.ContextVar(
        "callmap_suspended", default=False
    )

    def is_suspended(self) -> bool:
        """Return True if hooked calls in this context must not be recorded."""
        return self._suspended.get()

    @contextmanager
    def suspended(self) -> Iterator[None]:
        """Suspend recording for the duration of the ``with`` block.

        Nested suspensions are allowed; the previous state is restored on
        exit, including when the block raises.
        """
        token = self._suspended.set(True)
        try:
            yield
        finally:
            self._suspended.reset(token)
