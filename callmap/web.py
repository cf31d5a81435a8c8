"""web.py - Records one HTTP request cycle as a synthetic call/return pair.

``RequestRecorder`` is WSGI middleware. While a session is active, each
request it serves produces:

    HTTPServerRequest   a call event carrying the request method, the path
                        (without query string), the route template when a
                        resolver knows it, and a ``message`` list built from
                        the query string and form or JSON body.
    HTTPServerResponse  a return event carrying the status and content type,
                        linked to the request by ``parent_id`` and timed
                        across the whole request, including streaming of the
                        response body.

Sensitive parameters are redacted before their values are captured: a
parameter whose name matches one of ``Config.filter_parameters`` (a
case-insensitive substring match, so ``password`` also covers
``password_confirmation``) is recorded as ``[FILTERED]``.

Usage::

    from callmap.web import RequestRecorder

    app = RequestRecorder(app, config, route_resolver=lambda env: router.template_for(env))
"""

import io
import json
import logging
import re
import time
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs

from .config import Config
from .context import ContextManager
from .event import CALL, Event, MethodReturnIgnoreValue
from .identity import next_id, value_snapshot
from .tracer import tracing

logger = logging.getLogger(__name__)

FILTERED = "[FILTERED]"

RouteResolver = Callable[[Dict[str, Any]], Optional[str]]

_READ_CHUNK = 64 * 1024

_ctx = ContextManager()


class ParameterFilter:
    """Replaces the values of sensitive parameters with ``FILTERED``.

    Example:
        >>> ParameterFilter(["password"]).filter({"login": "alice", "password": "secret123"})
        {'login': 'alice', 'password': '[FILTERED]'}
    """

    def __init__(self, patterns: Iterable[str]) -> None:
        patterns = [p for p in patterns if p]
        self._regex = (
            re.compile("|".join(re.escape(p) for p in patterns), re.IGNORECASE) if patterns else None
        )

    def is_sensitive(self, name: str) -> bool:
        return self._regex is not None and self._regex.search(str(name)) is not None

    def filter(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``params`` with sensitive values redacted, recursively."""
        filtered = {}
        for name, value in params.items():
            if self.is_sensitive(name):
                filtered[name] = FILTERED
            elif isinstance(value, Mapping):
                filtered[name] = self.filter(value)
            else:
                filtered[name] = value
        return filtered


class HTTPServerRequest(Event):
    """Synthetic call event for an inbound HTTP request."""

    __slots__ = ("request_method", "path_info", "normalized_path_info", "message")

    def __init__(
        self,
        request_method: str,
        path_info: str,
        params: Mapping[str, Any],
        normalized_path_info: Optional[str] = None,
        parameter_filter: Optional[ParameterFilter] = None,
    ) -> None:
        super().__init__(next_id(), CALL)
        self.request_method = request_method
        self.path_info = path_info.split("?")[0]
        self.normalized_path_info = normalized_path_info
        if parameter_filter is not None:
            params = parameter_filter.filter(params)
        self.message = [dict(name=name, **value_snapshot(value)) for name, value in params.items()]

    def to_dict(self) -> Dict[str, Any]:
        h = super().to_dict()
        request = {
            "request_method": self.request_method,
            "path_info": self.path_info,
            "normalized_path_info": self.normalized_path_info,
        }
        h["http_server_request"] = {k: v for k, v in request.items() if v is not None}
        h["message"] = [dict(m) for m in self.message]
        return h


class HTTPServerResponse(MethodReturnIgnoreValue):
    """Synthetic return event for the response to an HTTPServerRequest."""

    __slots__ = ("status", "mime_type")

    def __init__(self, parent_id: int, elapsed: float, status: Optional[int], mime_type: Optional[str]) -> None:
        super().__init__(next_id(), parent_id, elapsed)
        self.status = status
        self.mime_type = mime_type

    def to_dict(self) -> Dict[str, Any]:
        h = super().to_dict()
        response = {"status": self.status, "mime_type": self.mime_type}
        h["http_server_response"] = {k: v for k, v in response.items() if v is not None}
        return h


class _ReplayInput:
    """``wsgi.input`` serving bytes already read before the rest of the stream."""

    def __init__(self, head: bytes, stream: Any) -> None:
        self._head = io.BytesIO(head)
        self._stream = stream

    def read(self, size: Optional[int] = -1) -> bytes:
        data = self._head.read(size)
        if size is None or size < 0:
            return data + self._stream.read()
        if len(data) < size:
            data += self._stream.read(size - len(data))
        return data

    def readline(self, size: Optional[int] = -1) -> bytes:
        line = self._head.readline(size)
        if line.endswith(b"\n") or (size is not None and 0 <= size <= len(line)):
            return line
        limit = -1 if size is None or size < 0 else size - len(line)
        return line + self._stream.readline(limit)

    def readlines(self, hint: int = -1) -> List[bytes]:
        return list(self)

    def __iter__(self) -> Iterator[bytes]:
        return iter(self.readline, b"")


def _read_body(environ: Dict[str, Any]) -> bytes:
    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        length = 0
    if length <= 0:
        return b""
    stream = environ["wsgi.input"]
    chunks: List[bytes] = []
    remaining = length
    try:
        while remaining > 0:
            chunk = stream.read(min(remaining, _READ_CHUNK))
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
    except Exception:
        # Put back what was read so the application still sees the full body.
        if chunks:
            environ["wsgi.input"] = _ReplayInput(b"".join(chunks), stream)
        raise
    body = b"".join(chunks)
    # Hand the application an unread copy of the body.
    environ["wsgi.input"] = io.BytesIO(body)
    return body


def _flatten(parsed: Mapping[str, List[str]]) -> Dict[str, Any]:
    return {name: values[0] if len(values) == 1 else values for name, values in parsed.items()}


def request_params(environ: Dict[str, Any]) -> Dict[str, Any]:
    """Collect query-string, urlencoded-form and JSON-object parameters."""
    params = _flatten(parse_qs(environ.get("QUERY_STRING", ""), keep_blank_values=True))
    media_type = environ.get("CONTENT_TYPE", "").split(";")[0].strip().lower()
    if media_type == "application/x-www-form-urlencoded":
        body = _read_body(environ).decode("utf-8", errors="replace")
        params.update(_flatten(parse_qs(body, keep_blank_values=True)))
    elif media_type == "application/json":
        body = _read_body(environ)
        try:
            data = json.loads(body) if body else None
        except ValueError:
            data = None
        if isinstance(data, dict):
            params.update(data)
    return params


class _RecordedBody:
    """Wraps a WSGI response iterable and reports once when it is closed."""

    def __init__(self, body: Iterable[bytes], on_close: Callable[[], None]) -> None:
        self._body = body
        self._on_close = on_close
        self._closed = False

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._body)

    def close(self) -> None:
        try:
            close = getattr(self._body, "close", None)
            if close is not None:
                close()
        finally:
            if not self._closed:
                self._closed = True
                self._on_close()


class RequestRecorder:
    """WSGI middleware emitting one request/response event pair per request.

    Args:
        app: The WSGI application to wrap.
        config: Supplies ``filter_parameters``. Defaults to ``Config()``.
        route_resolver: Optional callable returning the route template
            (e.g. ``"/users/<id>"``) for a WSGI environ, or None.
    """

    def __init__(
        self,
        app: Callable,
        config: Optional[Config] = None,
        route_resolver: Optional[RouteResolver] = None,
    ) -> None:
        self.app = app
        self.parameter_filter = ParameterFilter((config or Config()).filter_parameters)
        self.route_resolver = route_resolver

    def _normalized_path(self, environ: Dict[str, Any]) -> Optional[str]:
        if self.route_resolver is None:
            return None
        try:
            return self.route_resolver(environ)
        except Exception:
            logger.warning("Route resolver failed for %s", environ.get("PATH_INFO"), exc_info=True)
            return None

    def _record_request(
        self, environ: Dict[str, Any], sessions: Tuple[Any, ...]
    ) -> Optional[HTTPServerRequest]:
        """Emit the request event. Returns None if capture failed."""
        with _ctx.suspended():
            try:
                event = HTTPServerRequest(
                    environ.get("REQUEST_METHOD", "GET"),
                    environ.get("PATH_INFO", "") or "/",
                    request_params(environ),
                    self._normalized_path(environ),
                    self.parameter_filter,
                )
            except Exception:
                logger.exception(
                    "Failed to record request %s %s",
                    environ.get("REQUEST_METHOD"),
                    environ.get("PATH_INFO"),
                )
                return None
            tracing.record_event(event, sessions=sessions)
        return event

    def _record_response(
        self,
        call_event: HTTPServerRequest,
        start_time: float,
        response: Dict[str, Any],
        sessions: Tuple[Any, ...],
    ) -> None:
        elapsed = time.perf_counter() - start_time
        with _ctx.suspended():
            try:
                event = HTTPServerResponse(
                    call_event.id, elapsed, response.get("status"), response.get("mime_type")
                )
            except Exception:
                logger.exception("Failed to record response to %s", call_event.path_info)
                return
            tracing.record_event(event, sessions=sessions)

    def __call__(self, environ: Dict[str, Any], start_response: Callable) -> Iterable[bytes]:
        if not tracing.enabled or _ctx.is_suspended():
            return self.app(environ, start_response)

        sessions = tracing.sessions
        call_event = self._record_request(environ, sessions)
        if call_event is None:
            return self.app(environ, start_response)
        start_time = time.perf_counter()
        response: Dict[str, Any] = {}

        def recording_start_response(status, headers, exc_info=None):
            try:
                response["status"] = int(status.split(" ", 1)[0])
            except ValueError:
                logger.warning("Unparseable response status %r", status)
                response["status"] = None
            for name, value in headers:
                if name.lower() == "content-type":
                    response["mime_type"] = value
            if exc_info is None:
                return start_response(status, headers)
            return start_response(status, headers, exc_info)

        def finish():
            self._record_response(call_event, start_time, response, sessions)

        try:
            body = self.app(environ, recording_start_response)
        except BaseException:
            if response.get("status") is None:
                response["status"] = 500
            finish()
            raise
        return _RecordedBody(body, finish)
