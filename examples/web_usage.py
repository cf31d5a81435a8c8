"""examples/web_usage.py - Record HTTP requests served by a WSGI app.

Wraps a tiny WSGI application in ``RequestRecorder`` and serves two requests
in-process. The login password is recorded as ``[FILTERED]``; the handler's
own calls nest between the request and response events. Each recording is
written to ``tmp/callmap/<name>.json``.

Run:
    python examples/web_usage.py
"""

import io
import logging
import re
from urllib.parse import urlencode
from wsgiref.util import setup_testing_defaults

from callmap import Config, FileExporter, Package, RequestRecorder, record

logging.basicConfig(level=logging.INFO)

config = Config(
    name="accounts",
    packages=[Package(path=__file__)],
    filter_parameters=["password"],
)

ROUTES = [
    (re.compile(r"^/users/\d+$"), "/users/{id}"),
    (re.compile(r"^/login$"), "/login"),
]


class Accounts:
    def authenticate(self, login):
        return login == "alice"


def app(environ, start_response):
    if environ["PATH_INFO"] == "/login":
        ok = Accounts().authenticate("alice")
        start_response("200 OK" if ok else "401 Unauthorized", [("Content-Type", "text/plain")])
        return [b"welcome"]
    start_response("200 OK", [("Content-Type", "application/json")])
    return [b'{"name": "alice"}']


def resolve_route(environ):
    for pattern, template in ROUTES:
        if pattern.match(environ["PATH_INFO"]):
            return template
    return None


def serve(wsgi_app, method, path, form=None):
    body = urlencode(form or {}).encode()
    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "CONTENT_TYPE": "application/x-www-form-urlencoded",
        "CONTENT_LENGTH": str(len(body)),
        "wsgi.input": io.BytesIO(body),
    }
    setup_testing_defaults(environ)
    result = wsgi_app(environ, lambda status, headers, exc_info=None: None)
    try:
        return b"".join(result)
    finally:
        result.close()


if __name__ == "__main__":
    wsgi_app = RequestRecorder(app, config, route_resolver=resolve_route)
    exporter = FileExporter("tmp/callmap")

    with record(config, name="POST /login", exporter=exporter):
        serve(wsgi_app, "POST", "/login", {"login": "alice", "password": "secret123"})

    with record(config, name="GET /users/{id}", exporter=exporter):
        serve(wsgi_app, "GET", "/users/42")

    print("recordings written to tmp/callmap/")
