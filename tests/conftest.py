"""Shared fixtures for callmap tests.

Fixture modules under ``tests/fixtures/hook/`` are loaded from their file
path under a fresh module name on every use, so each test hooks its own
class objects. After every test the process is returned to baseline: all
sessions stopped, all methods unhooked, ids rewound.
"""

import importlib.util
import itertools
from pathlib import Path

import pytest

from callmap.config import Config, Package
from callmap.hook import Hook, unhook_all
from callmap.identity import reset_id_counter
from callmap.tracer import tracing

FIXTURES = Path(__file__).parent / "fixtures" / "hook"

_module_counter = itertools.count()


def fixture_path(name):
    return str(FIXTURES / f"{name}.py")


def _load_fixture(name):
    module_name = f"callmap_fixture_{name}_{next(_module_counter)}"
    spec = importlib.util.spec_from_file_location(module_name, fixture_path(name))
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture(autouse=True)
def baseline():
    """Return the process to baseline after each test."""
    yield
    for session in tracing.active_sessions():
        tracing.stop_session(session)
    unhook_all()
    reset_id_counter()


@pytest.fixture
def load_fixture():
    """Return a loader: ``load_fixture("instance_method") -> module``."""
    return _load_fixture


@pytest.fixture
def invoke_fixture():
    """Return a helper that hooks a fixture module and records a block.

    ``invoke_fixture(name, block, exclude=(), setup=None)`` loads the fixture,
    hooks it with a config covering only that file, runs ``setup(module)``
    unrecorded, then rewinds ids, starts a session and runs
    ``block(module, setup_result)``. Returns ``(config, session, module)``.
    """

    def invoke(name, block, exclude=(), setup=None):
        module = _load_fixture(name)
        config = Config(
            name="fixtures",
            packages=[Package(path=fixture_path(name), exclude=list(exclude))],
        )
        Hook(config).hook_module(module)
        setup_result = setup(module) if setup else None

        reset_id_counter()
        session = tracing.start_session()
        try:
            block(module, setup_result)
        finally:
            tracing.stop_session(session)
        return config, session, module

    return invoke


def collect_events(session):
    """Drain ``session`` into dicts, dropping fields that vary between runs."""
    events = []
    for event in session.drain():
        h = event.to_dict()
        h.pop("thread_id", None)
        h.pop("elapsed", None)
        for key in ("receiver", "return_value"):
            if h.get(key):
                h[key].pop("object_id", None)
        for item in h.get("parameters", []) + h.get("exceptions", []) + h.get("message", []):
            item.pop("object_id", None)
        events.append(h)
    return events


@pytest.fixture
def events_of():
    return collect_events
