"""tracer.py - Recording sessions and the process-wide session registry.

A Session is the in-memory sink for one recording. Every event emitted while
the session is active is appended to it; consumers read events back in
arrival order with ``pop_event()`` (or all at once with ``drain()``).

Tracing is the registry of active sessions. Hook wrappers and the HTTP
adapter hand each event to ``tracing.record_event()``, which broadcasts it to
every session that is active at that moment. A session never sees events
emitted before it started or after it stopped.

Design decisions:
    - ``collections.deque`` gives O(1) append and popleft, both atomic under
      CPython's GIL, so concurrent producers can append to the same session
      without a lock.
    - The registry keeps an immutable tuple of sessions that is replaced
      under a lock on start/stop (copy-on-write). Broadcasting iterates the
      tuple it read, so sessions may be added or removed concurrently with
      live traffic.
"""

import logging
import threading
from collections import deque
from typing import TYPE_CHECKING, FrozenSet, List, Optional, Tuple

if TYPE_CHECKING:
    from .event import Event
    from .hook import HookedMethod

logger = logging.getLogger(__name__)


class Session:
    """An ordered, consumable stream of events for one recording.

    Besides the events themselves, the session remembers every hooked method
    that produced at least one call while it was active. That set feeds the
    class map of the recording.

    Example:
        >>> session = tracing.start_session()
        >>> ...                    # run instrumented code
        >>> tracing.stop_session(session)
        >>> while session.has_pending_event():
        ...     print(session.pop_event().to_dict())
    """

    def __init__(self) -> None:
        self._events: deque = deque()
        self._methods: dict = {}
        self._methods_lock = threading.Lock()
        self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    def record_event(self, event: "Event", method: Optional["HookedMethod"] = None) -> None:
        """Append ``event`` if the session is active.

        Args:
            event: The event to append.
            method: The hooked method that produced ``event``, for call
                events. Recorded in ``observed_methods()``.
        """
        if not self._enabled:
            return
        self._events.append(event)
        if method is not None:
            with self._methods_lock:
                self._methods.setdefault(method, None)

    def has_pending_event(self) -> bool:
        """Return True if at least one event is waiting to be popped."""
        return bool(self._events)

    def pop_event(self) -> "Event":
        """Remove and return the oldest pending event.

        Raises:
            IndexError: If no event is pending.
        """
        return self._events.popleft()

    def drain(self) -> List["Event"]:
        """Pop and return every pending event, oldest first."""
        events = []
        while self._events:
            events.append(self._events.popleft())
        return events

    def observed_methods(self) -> List["HookedMethod"]:
        """Return the hooked methods that fired in this session, first-seen order."""
        with self._methods_lock:
            return list(self._methods)

    def __len__(self) -> int:
        return len(self._events)


class Tracing:
    """Process-wide registry of active sessions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Tuple[Session, ...] = ()

    @property
    def enabled(self) -> bool:
        """True while at least one session is recording."""
        return bool(self._sessions)

    def start_session(self) -> Session:
        """Create, enable and register a new session."""
        session = Session()
        session.enable()
        with self._lock:
            self._sessions = self._sessions + (session,)
        logger.debug("Started session %#x (%d active)", id(session), len(self._sessions))
        return session

    def stop_session(self, session: Session) -> None:
        """Disable ``session`` and remove it from the registry.

        Pending events remain readable after the session is stopped.
        """
        session.disable()
        with self._lock:
            self._sessions = tuple(s for s in self._sessions if s is not session)
        logger.debug("Stopped session %#x (%d active)", id(session), len(self._sessions))

    def active_sessions(self) -> FrozenSet[Session]:
        return frozenset(self._sessions)

    @property
    def sessions(self) -> Tuple[Session, ...]:
        """Snapshot of the active sessions, in start order."""
        return self._sessions

    def record_event(
        self,
        event: "Event",
        method: Optional["HookedMethod"] = None,
        sessions: Optional[Tuple[Session, ...]] = None,
    ) -> None:
        """Deliver ``event`` to ``sessions``, or to every active session.

        A return event is delivered to the snapshot its call went to, so a
        session started while the call was running never sees the return
        without the call. Sessions stopped since the snapshot drop it.
        """
        for session in self._sessions if sessions is None else sessions:
            session.record_event(event, method)


tracing = Tracing()


def start_session() -> Session:
    return tracing.start_session()


def stop_session(session: Session) -> None:
    tracing.stop_session(session)


def active_sessions() -> FrozenSet[Session]:
    return tracing.active_sessions()
