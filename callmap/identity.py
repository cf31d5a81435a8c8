"""identity.py - Event ids and bounded value rendering.

Two process-wide concerns live here:

    Event ids:  A monotonically increasing counter shared by every session.
                ``next_id()`` is safe to call from any thread. The counter is
                only rewound by ``reset_id_counter()`` at an epoch boundary
                (start of a recording or of a test), never while sessions
                expect continuity.

    Display:    ``display_string()`` turns an arbitrary captured value into a
                short string. It never raises: a value whose ``__str__`` blows
                up is rendered as ``"<object of type X>"`` and the failure is
                logged instead of reaching the instrumented program.
"""

import logging
import os
import reprlib
import threading
from collections import deque
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DISPLAY_LIMIT = 100

_CONTAINER_TYPES = (list, tuple, set, frozenset, dict, deque)

_lock = threading.Lock()
_last_id = 0

_repr = reprlib.Repr()
_repr.maxstring = DISPLAY_LIMIT
_repr.maxother = DISPLAY_LIMIT
_repr.maxlevel = 3


def next_id() -> int:
    """Return the next event id. The first id of an epoch is 1."""
    global _last_id
    with _lock:
        _last_id += 1
        return _last_id


def reset_id_counter() -> None:
    """Rewind the id counter so that the next event id is 1."""
    global _last_id
    with _lock:
        _last_id = 0


def type_name(value: Any) -> str:
    """Return the qualified name of ``value``'s type, e.g. ``"InstanceMethod"``."""
    cls = type(value)
    return getattr(cls, "__qualname__", None) or cls.__name__


def identity_token(value: Any) -> int:
    """Return a token distinguishing ``value`` from other live objects."""
    return id(value)


def display_string(value: Any) -> Optional[str]:
    """Render ``value`` as a string of at most ``DISPLAY_LIMIT`` characters.

    ``None`` stays ``None`` so that it serialises as null. Strings are used as
    is, containers go through a bounded ``reprlib.Repr`` so that a huge list
    costs no more than a small one, and everything else goes through
    ``str()``.

    Example:
        >>> display_string("default")
        'default'
        >>> display_string(None) is None
        True
    """
    if value is None:
        return None
    try:
        if isinstance(value, str):
            text = value
        elif isinstance(value, _CONTAINER_TYPES):
            text = _repr.repr(value)
        else:
            text = str(value)
        if not isinstance(text, str):
            raise TypeError(f"__str__ returned {type(text).__name__}")
    except Exception as exc:
        logger.warning("Error rendering %s for display: %s", type_name(value), exc)
        return f"<object of type {type_name(value)}>"
    return text[:DISPLAY_LIMIT]


def value_snapshot(value: Any) -> Dict[str, Any]:
    """Return the ``{class, value, object_id}`` snapshot of a captured value."""
    return {
        "class": type_name(value),
        "value": display_string(value),
        "object_id": identity_token(value),
    }


def display_path(path: str) -> str:
    """Return ``path`` relative to the working directory when it lies under it."""
    absolute = os.path.abspath(path)
    cwd = os.getcwd()
    if absolute.startswith(cwd + os.sep):
        return os.path.relpath(absolute, cwd)
    return absolute
