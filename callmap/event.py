"""event.py - Call and return events and their serialised form.

Every hooked invocation produces exactly two events:

    MethodCall    emitted before the original body runs; captures the
                  receiver, the bound arguments and the source location.
    MethodReturn  emitted after the body completes or raises; links back to
                  its call through ``parent_id`` and captures either the
                  return value or the raised exception chain.

Linkage is by explicit id rather than by position in a stack, so calls
interleaved across threads still pair up correctly.

Events use ``__slots__`` and are populated once, in ``__init__``. Capturing a
value never raises (see ``identity.display_string``): instrumentation must not
crash the instrumented program.
"""

import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .identity import (
    display_path,
    display_string,
    identity_token,
    next_id,
    type_name,
    value_snapshot,
)
from .tracer import tracing

CALL = "call"
RETURN = "return"

# Marker for "no receiver", distinct from a receiver that is None.
NO_RECEIVER = object()


class Event:
    """Base class for recorded events.

    Attributes:
        id (int): Process-wide unique, increasing event id.
        event (str): ``"call"`` or ``"return"``.
        thread_id (int): ``threading.get_ident()`` of the emitting thread.
    """

    __slots__ = ("id", "event", "thread_id")

    def __init__(self, id: int, event: str, thread_id: Optional[int] = None) -> None:
        self.id = id
        self.event = event
        self.thread_id = threading.get_ident() if thread_id is None else thread_id

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "event": self.event, "thread_id": self.thread_id}

    def __repr__(self) -> str:  # pragma: no cover
        return f"{type(self).__name__}(id={self.id})"


class MethodCall(Event):
    """A method invocation, recorded before the method body runs.

    Attributes:
        defined_class (str): Qualified name of the class (or module, for
            module-level functions) that defines the method.
        method_id (str): The method name.
        path (str): Source file of the method definition.
        lineno (int): First line of the definition.
        static (bool): True for class methods, static methods and module
            functions.
        receiver (dict | None): ``{class, value, object_id}`` snapshot of
            ``self``/``cls``, or None when the call has no receiver.
        parameters (list[dict]): One ``{name, class, value, kind, object_id}``
            entry per bound parameter, in signature order.
    """

    __slots__ = ("defined_class", "method_id", "path", "lineno", "static", "receiver", "parameters")

    def __init__(
        self,
        id: int,
        defined_class: str,
        method_id: str,
        path: str,
        lineno: int,
        static: bool,
        receiver: Any = NO_RECEIVER,
        parameters: Iterable[Tuple[str, str, Any]] = (),
    ) -> None:
        super().__init__(id, CALL)
        self.defined_class = defined_class
        self.method_id = method_id
        self.path = path
        self.lineno = lineno
        self.static = static
        self.receiver = None if receiver is NO_RECEIVER else value_snapshot(receiver)
        self.parameters = [
            {
                "name": name,
                "class": type_name(value),
                "value": display_string(value),
                "kind": kind,
                "object_id": identity_token(value),
            }
            for name, kind, value in parameters
        ]

    def to_dict(self) -> Dict[str, Any]:
        h = super().to_dict()
        h.update(
            defined_class=self.defined_class,
            method_id=self.method_id,
            path=self.path,
            lineno=self.lineno,
            static=self.static,
            parameters=[dict(p) for p in self.parameters],
        )
        if self.receiver is not None:
            h["receiver"] = dict(self.receiver)
        return h


class MethodReturnIgnoreValue(Event):
    """A return event that does not capture a return value.

    Used directly by adapters whose "return value" is not meaningful, such as
    the HTTP response event.
    """

    __slots__ = ("parent_id", "elapsed")

    def __init__(self, id: int, parent_id: int, elapsed: float) -> None:
        super().__init__(id, RETURN)
        self.parent_id = parent_id
        self.elapsed = elapsed

    def to_dict(self) -> Dict[str, Any]:
        h = super().to_dict()
        h.update(parent_id=self.parent_id, elapsed=self.elapsed)
        return h


class MethodReturn(MethodReturnIgnoreValue):
    """The conclusion of a method call: a return value or an exception chain."""

    __slots__ = ("return_value", "exceptions")

    def __init__(
        self,
        id: int,
        parent_id: int,
        elapsed: float,
        return_value: Any = None,
        exception: Optional[BaseException] = None,
    ) -> None:
        super().__init__(id, parent_id, elapsed)
        if exception is not None:
            self.return_value = None
            self.exceptions = exception_chain(exception)
        else:
            self.return_value = value_snapshot(return_value)
            self.exceptions = None

    def to_dict(self) -> Dict[str, Any]:
        h = super().to_dict()
        if self.exceptions:
            h["exceptions"] = [dict(e) for e in self.exceptions]
        else:
            h["return_value"] = dict(self.return_value)
        return h


def _safe_message(exc: BaseException) -> str:
    try:
        return str(exc)
    except Exception:
        return f"<object of type {type_name(exc)}>"


def _raise_site(exc: BaseException) -> Tuple[Optional[str], Optional[int]]:
    tb = exc.__traceback__
    if tb is None:
        return None, None
    while tb.tb_next is not None:
        tb = tb.tb_next
    return display_path(tb.tb_frame.f_code.co_filename), tb.tb_lineno


def exception_chain(exc: BaseException) -> List[Dict[str, Any]]:
    """Return ``exc`` and its causes as a list of ``{class, message, path, lineno}``.

    Follows ``__cause__``, then ``__context__`` unless it was suppressed with
    ``raise ... from None``. Cycles are cut.
    """
    chain = []
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        path, lineno = _raise_site(current)
        chain.append(
            {
                "class": type_name(current),
                "message": _safe_message(current),
                "path": path,
                "lineno": lineno,
                "object_id": identity_token(current),
            }
        )
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None
    return chain


def emit_call(
    receiver: Any,
    parameters: Iterable[Tuple[str, str, Any]],
    defined_class: str,
    method_id: str,
    location: Tuple[str, int],
    is_static: bool,
    method: Any = None,
    sessions: Optional[Tuple[Any, ...]] = None,
) -> MethodCall:
    """Build a MethodCall and broadcast it to every active session.

    Args:
        receiver: ``self``/``cls`` of the call, or ``NO_RECEIVER``.
        parameters: ``(name, kind, value)`` triples in signature order.
        defined_class: Qualified name of the defining class or module.
        method_id: The method name.
        location: ``(path, lineno)`` of the definition.
        is_static: Whether the method is bound to the type.
        method: The HookedMethod that fired, recorded as observed.
        sessions: Deliver only to these sessions. Defaults to every active
            session.

    Returns:
        The emitted event.
    """
    path, lineno = location
    event = MethodCall(
        next_id(), defined_class, method_id, path, lineno, is_static, receiver, parameters
    )
    tracing.record_event(event, method, sessions)
    return event


def emit_return(
    parent_id: int,
    elapsed: float,
    return_value: Any = None,
    exception: Optional[BaseException] = None,
    sessions: Optional[Tuple[Any, ...]] = None,
) -> MethodReturn:
    """Build a MethodReturn closing ``parent_id`` and broadcast it.

    Pass the ``sessions`` the call was delivered to so the return reaches
    exactly those.
    """
    event = MethodReturn(next_id(), parent_id, elapsed, return_value, exception)
    tracing.record_event(event, sessions=sessions)
    return event
