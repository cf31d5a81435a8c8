"""test_hook.py - Interception engine tests against fixture modules.

Covers:
    - End-to-end: a zero-argument instance method yields exactly one call and
      one return, ids 1 and 2
    - Parameter capture: required, optional, keyword, rest and keyword-rest
    - Class methods and static methods record static=True and the class as
      receiver
    - Mixin methods are wrapped once and nest inside the caller's events
    - Functions assigned to a single instance are never captured
    - Exceptions are recorded with their cause chain and re-raised unchanged
    - Accessors and constructors never produce events; dunders with
      application logic (__call__, __getitem__) do
    - AlreadyHooked / Ineligible / uninstall / configuration exclusions
    - Module-level functions, nested classes, imported names
    - No ids are consumed while no session is active
    - Capture is suspended while rendering values (no re-entrant events)
    - Concurrent calls on several threads pair up by id
    - A session started mid-call never receives that call's return
    - Coroutine and generator functions keep their kind and are recorded
      while they run
    - Import hook hooks configured modules as they are imported
"""

import asyncio
import importlib
import inspect
import sys
import threading
from pathlib import Path

import pytest

from callmap.config import Config, Package
from callmap.errors import AlreadyHooked, Ineligible
from callmap.hook import (
    CLASS,
    FUNCTION,
    INSTANCE,
    STATIC,
    Hook,
    MethodDescriptor,
    hooked_methods,
    install,
    is_hooked,
    uninstall,
)
from callmap.identity import display_path, next_id, reset_id_counter
from callmap.tracer import tracing

FIXTURES = Path(__file__).parent / "fixtures" / "hook"


def _path(name):
    return display_path(str(FIXTURES / f"{name}.py"))


def _receiver(cls_name, value):
    return {"class": cls_name, "value": value}


# ---------------------------------------------------------------------------
# Instance methods
# ---------------------------------------------------------------------------


class TestInstanceMethod:
    def test_hooks_an_instance_method_that_takes_no_arguments(self, invoke_fixture, events_of):
        """A zero-argument method produces exactly a call (id 1) and a return (id 2)."""

        def block(m, _):
            assert m.InstanceMethod().say_default() == "default"

        _, session, _ = invoke_fixture("instance_method", block)
        assert events_of(session) == [
            {
                "id": 1,
                "event": "call",
                "defined_class": "InstanceMethod",
                "method_id": "say_default",
                "path": _path("instance_method"),
                "lineno": 5,
                "static": False,
                "parameters": [],
                "receiver": _receiver("InstanceMethod", "Instance Method fixture"),
            },
            {
                "id": 2,
                "event": "return",
                "parent_id": 1,
                "return_value": {"class": "str", "value": "default"},
            },
        ]

    def test_hooks_an_instance_method_that_takes_an_argument(self, invoke_fixture, events_of):
        """A positional argument is recorded as a required parameter."""

        def block(m, _):
            assert m.InstanceMethod().say_echo("echo") == "echo"

        _, session, _ = invoke_fixture("instance_method", block)
        call, ret = events_of(session)
        assert call["method_id"] == "say_echo"
        assert call["lineno"] == 8
        assert call["parameters"] == [
            {"name": "arg", "class": "str", "value": "echo", "kind": "req"}
        ]
        assert ret["return_value"] == {"class": "str", "value": "echo"}

    def test_hooks_a_keyword_argument(self, invoke_fixture, events_of):
        """A keyword-only argument is recorded with kind 'key'."""

        def block(m, _):
            assert m.InstanceMethod().say_kw(kw="other") == "other"

        _, session, _ = invoke_fixture("instance_method", block)
        call, _ = events_of(session)
        assert call["parameters"] == [
            {"name": "kw", "class": "str", "value": "other", "kind": "key"}
        ]

    def test_default_keyword_argument_is_captured_with_its_default(self, invoke_fixture, events_of):
        """Omitted arguments are recorded with their default values."""

        def block(m, _):
            assert m.InstanceMethod().say_kw() == "kw"

        _, session, _ = invoke_fixture("instance_method", block)
        call, _ = events_of(session)
        assert call["parameters"] == [
            {"name": "kw", "class": "str", "value": "kw", "kind": "key"}
        ]

    def test_optional_argument_kind(self, invoke_fixture, events_of):
        """A positional parameter with a default is recorded with kind 'opt'."""

        def block(m, _):
            assert m.InstanceMethod().say_opt("hi") == "hi world"

        _, session, _ = invoke_fixture("instance_method", block)
        call, _ = events_of(session)
        assert [(p["name"], p["kind"], p["value"]) for p in call["parameters"]] == [
            ("greeting", "req", "hi"),
            ("name", "opt", "world"),
        ]

    def test_rest_and_keyword_rest_arguments(self, invoke_fixture, events_of):
        """*args and **kwargs are recorded as 'rest' and 'keyrest'."""

        def block(m, _):
            assert m.InstanceMethod().say_rest(1, 2, a=3) == 3

        _, session, _ = invoke_fixture("instance_method", block)
        call, ret = events_of(session)
        assert call["parameters"] == [
            {"name": "args", "class": "tuple", "value": "(1, 2)", "kind": "rest"},
            {"name": "kwargs", "class": "dict", "value": "{'a': 3}", "kind": "keyrest"},
        ]
        assert ret["return_value"] == {"class": "int", "value": "3"}

    def test_invoking_twice_in_fresh_epochs_yields_identical_events(self, invoke_fixture, events_of):
        """Event shapes do not depend on anything but the input."""

        def block(m, _):
            m.InstanceMethod().say_echo("echo")

        _, first, _ = invoke_fixture("instance_method", block)
        _, second, _ = invoke_fixture("instance_method", block)
        assert events_of(first) == events_of(second)


# ---------------------------------------------------------------------------
# Class-level methods, mixins, per-instance functions
# ---------------------------------------------------------------------------


class TestStaticAndIncludedMethods:
    def test_hooks_a_class_method(self, invoke_fixture, events_of):
        """A classmethod is static and its receiver is the class."""
        captured = {}

        def block(m, _):
            captured["cls"] = m.SingletonMethod
            assert m.SingletonMethod.say_default() == "default"

        _, session, _ = invoke_fixture("singleton_method", block)
        call, ret = events_of(session)
        assert call["defined_class"] == "SingletonMethod"
        assert call["method_id"] == "say_default"
        assert call["static"] is True
        assert call["lineno"] == 5
        assert call["parameters"] == []
        assert call["receiver"] == _receiver("type", str(captured["cls"]))
        assert ret["parent_id"] == call["id"]

    def test_hooks_a_static_method(self, invoke_fixture, events_of):
        """A staticmethod is static and reports its defining class as receiver."""
        captured = {}

        def block(m, _):
            captured["cls"] = m.SingletonMethod
            assert m.SingletonMethod.say_static() == "defined as a static method"

        _, session, _ = invoke_fixture("singleton_method", block)
        call, ret = events_of(session)
        assert call["method_id"] == "say_static"
        assert call["static"] is True
        assert call["receiver"] == _receiver("type", str(captured["cls"]))
        assert ret["return_value"]["value"] == "defined as a static method"

    def test_hooks_an_included_method(self, invoke_fixture, events_of):
        """A call into a mixin nests inside the caller and closes first."""

        def block(m, _):
            assert m.IncludedMethod().added_method() == "defined by including a module"

        _, session, _ = invoke_fixture("singleton_method", block)
        receiver = _receiver("IncludedMethod", "Included Method fixture")
        assert events_of(session) == [
            {
                "id": 1,
                "event": "call",
                "defined_class": "IncludedMethod",
                "method_id": "added_method",
                "path": _path("singleton_method"),
                "lineno": 33,
                "static": False,
                "parameters": [],
                "receiver": receiver,
            },
            {
                "id": 2,
                "event": "call",
                "defined_class": "AddMethod",
                "method_id": "_added_method",
                "path": _path("singleton_method"),
                "lineno": 25,
                "static": False,
                "parameters": [],
                "receiver": receiver,
            },
            {
                "id": 3,
                "event": "return",
                "parent_id": 2,
                "return_value": {"class": "str", "value": "defined by including a module"},
            },
            {
                "id": 4,
                "event": "return",
                "parent_id": 1,
                "return_value": {"class": "str", "value": "defined by including a module"},
            },
        ]

    def test_mixin_method_is_wrapped_once_in_its_defining_class(self, load_fixture):
        """The wrapper lives in the mixin's __dict__, not in its subclasses."""
        module = load_fixture("singleton_method")
        Hook(Config(packages=[Package(path=str(FIXTURES))])).hook_module(module)
        assert is_hooked(module.AddMethod, "_added_method")
        assert "_added_method" not in vars(module.IncludedMethod)

    def test_does_not_hook_a_function_defined_for_an_instance(self, invoke_fixture, events_of):
        """Functions assigned to a single object are a known non-capture."""

        def block(m, s):
            assert s.say_instance_defined() == "defined for an instance"

        _, session, _ = invoke_fixture(
            "singleton_method", block, setup=lambda m: m.SingletonMethod.new_with_instance_method()
        )
        assert events_of(session) == []


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TestExceptions:
    def test_reports_exceptions(self, invoke_fixture, events_of):
        """A raising method records exceptions and no return_value."""

        def block(m, _):
            with pytest.raises(RuntimeError):
                m.ExceptionMethod().raise_exception()

        _, session, _ = invoke_fixture("exception_method", block)
        call, ret = events_of(session)
        assert call["method_id"] == "raise_exception"
        assert ret == {
            "id": 2,
            "event": "return",
            "parent_id": 1,
            "exceptions": [
                {
                    "class": "RuntimeError",
                    "message": "Exception occurred in raise_exception",
                    "path": _path("exception_method"),
                    "lineno": 6,
                }
            ],
        }

    def test_reraises_exceptions_unchanged(self, invoke_fixture):
        """The caller sees the very exception object the method raised."""
        raised = {}

        def block(m, _):
            with pytest.raises(RuntimeError, match="Exception occurred in raise_exception") as info:
                m.ExceptionMethod().raise_exception()
            raised["exc"] = info.value

        invoke_fixture("exception_method", block)
        assert type(raised["exc"]) is RuntimeError
        assert raised["exc"].__cause__ is None

    def test_reports_the_cause_chain(self, invoke_fixture, events_of):
        """``raise ... from`` causes follow the raised exception in order."""

        def block(m, _):
            with pytest.raises(ValueError, match="lookup failed"):
                m.ExceptionMethod().raise_with_cause()

        _, session, _ = invoke_fixture("exception_method", block)
        _, ret = events_of(session)
        assert "return_value" not in ret
        assert [(e["class"], e["message"], e["lineno"]) for e in ret["exceptions"]] == [
            ("ValueError", "lookup failed", 12),
            ("KeyError", "'missing'", 10),
        ]


# ---------------------------------------------------------------------------
# Built-in exclusions
# ---------------------------------------------------------------------------


class TestBuiltinExclusions:
    def test_does_not_hook_accessors(self, invoke_fixture, events_of):
        """Getters, setters and properties never produce events."""

        def block(m, _):
            obj = m.AttrAccessor()
            obj.set_value("foo")
            assert obj.get_value() == "foo"
            obj.value = "bar"
            assert obj.value == "bar"

        _, session, _ = invoke_fixture("attr_accessor", block)
        assert events_of(session) == []

    def test_hooks_methods_with_logic_next_to_accessors(self, invoke_fixture, events_of):
        def block(m, _):
            obj = m.AttrAccessor()
            obj.set_value("foo")
            assert obj.describe() == "value=foo"

        _, session, _ = invoke_fixture("attr_accessor", block)
        assert [e["method_id"] for e in events_of(session) if e["event"] == "call"] == ["describe"]

    def test_does_not_hook_a_constructor(self, invoke_fixture, events_of):
        def block(m, _):
            assert m.Constructor("foo").value == "foo"

        _, session, _ = invoke_fixture("constructor", block)
        assert events_of(session) == []

    def test_install_reports_the_exclusion_reason(self, load_fixture):
        module = load_fixture("attr_accessor")
        with pytest.raises(Ineligible) as info:
            install(MethodDescriptor.of(module.AttrAccessor, "get_value"))
        assert info.value.reason == "accessor"

        with pytest.raises(Ineligible) as info:
            install(MethodDescriptor.of(module.AttrAccessor, "__init__"))
        assert info.value.reason == "constructor"

    def test_properties_are_not_method_descriptors(self, load_fixture):
        module = load_fixture("attr_accessor")
        with pytest.raises(Ineligible):
            MethodDescriptor.of(module.AttrAccessor, "value")


# ---------------------------------------------------------------------------
# Install / uninstall contract
# ---------------------------------------------------------------------------


class TestInstallContract:
    def test_descriptor_kinds(self, load_fixture):
        im = load_fixture("instance_method")
        sm = load_fixture("singleton_method")
        fn = load_fixture("functions")
        assert MethodDescriptor.of(im.InstanceMethod, "say_default").kind == INSTANCE
        assert MethodDescriptor.of(sm.SingletonMethod, "say_default").kind == CLASS
        assert MethodDescriptor.of(sm.SingletonMethod, "say_static").kind == STATIC
        assert MethodDescriptor.of(fn, "greet").kind == FUNCTION

    def test_descriptor_requires_the_defining_owner(self, load_fixture):
        """Inherited methods must be installed where they are defined."""
        module = load_fixture("singleton_method")
        with pytest.raises(Ineligible):
            MethodDescriptor.of(module.IncludedMethod, "_added_method")

    def test_installing_twice_raises_already_hooked(self, load_fixture):
        module = load_fixture("instance_method")
        install(MethodDescriptor.of(module.InstanceMethod, "say_default"))
        with pytest.raises(AlreadyHooked):
            install(MethodDescriptor.of(module.InstanceMethod, "say_default"))
        assert len(hooked_methods()) == 1

    def test_config_exclusion_makes_a_method_ineligible(self, load_fixture):
        module = load_fixture("instance_method")
        config = Config(
            packages=[Package(path=str(FIXTURES), exclude=["InstanceMethod#say_echo"])]
        )
        with pytest.raises(Ineligible) as info:
            install(MethodDescriptor.of(module.InstanceMethod, "say_echo"), config)
        assert info.value.reason == "excluded by configuration"

        hooked = Hook(config).hook_module(module)
        assert "say_echo" not in [h.method_id for h in hooked]
        assert "say_default" in [h.method_id for h in hooked]

    def test_uninstall_restores_the_original_function(self, load_fixture):
        module = load_fixture("singleton_method")
        original = vars(module.SingletonMethod)["say_static"]
        hooked = install(MethodDescriptor.of(module.SingletonMethod, "say_static"))
        assert vars(module.SingletonMethod)["say_static"] is not original

        uninstall(hooked)
        assert vars(module.SingletonMethod)["say_static"] is original
        assert hooked_methods() == []

        session = tracing.start_session()
        module.SingletonMethod.say_static()
        tracing.stop_session(session)
        assert not session.has_pending_event()

    def test_wrapper_preserves_function_metadata(self, load_fixture):
        module = load_fixture("instance_method")
        install(MethodDescriptor.of(module.InstanceMethod, "say_echo"))
        assert module.InstanceMethod.say_echo.__name__ == "say_echo"
        assert module.InstanceMethod.say_echo.__qualname__ == "InstanceMethod.say_echo"

    def test_hooked_method_identity(self, load_fixture):
        module = load_fixture("instance_method")
        hooked = install(MethodDescriptor.of(module.InstanceMethod, "say_default"))
        assert (hooked.defined_class, hooked.method_id, hooked.is_static) == (
            "InstanceMethod",
            "say_default",
            False,
        )
        assert hooked.location == f"{_path('instance_method')}:5"


# ---------------------------------------------------------------------------
# Module discovery
# ---------------------------------------------------------------------------


class TestHookModule:
    def test_module_functions_and_nested_classes(self, invoke_fixture, events_of):
        module_name = {}

        def block(m, _):
            module_name["name"] = m.__name__
            assert m.greet("bob") == "hello bob"
            assert m.Outer.Inner().ping() == "pong"

        _, session, _ = invoke_fixture("functions", block, exclude=["Excluded"])
        events = events_of(session)
        calls = [e for e in events if e["event"] == "call"]
        assert [(c["defined_class"], c["method_id"], c["static"]) for c in calls] == [
            (module_name["name"], "greet", True),
            ("Outer.Inner", "ping", False),
        ]
        assert "receiver" not in calls[0]
        assert calls[0]["parameters"] == [
            {"name": "name", "class": "str", "value": "bob", "kind": "req"}
        ]

    def test_excluded_class_and_imported_names_are_left_alone(self, load_fixture):
        module = load_fixture("functions")
        import os.path

        config = Config(packages=[Package(path=str(FIXTURES), exclude=["Excluded"])])
        Hook(config).hook_module(module)
        assert not is_hooked(module.Excluded, "skipped")
        assert module.join is os.path.join

    def test_module_outside_every_package_is_not_hooked(self, load_fixture, tmp_path):
        module = load_fixture("instance_method")
        config = Config(packages=[Package(path=str(tmp_path))])
        assert Hook(config).hook_module(module) == []

    def test_hook_loaded_modules(self, load_fixture, monkeypatch):
        module = load_fixture("instance_method")
        monkeypatch.setitem(sys.modules, module.__name__, module)
        config = Config(packages=[Package(path=str(FIXTURES / "instance_method.py"))])
        hooked = Hook(config).hook_loaded_modules()
        assert {h.method_id for h in hooked} == {
            "say_default",
            "say_echo",
            "say_kw",
            "say_opt",
            "say_rest",
        }

    def test_import_hook_hooks_modules_as_they_are_imported(self, tmp_path, monkeypatch):
        (tmp_path / "callmap_imported_pkg.py").write_text(
            "class Imported:\n    def work(self):\n        return 42\n"
        )
        monkeypatch.syspath_prepend(str(tmp_path))
        importlib.invalidate_caches()
        hook = Hook(Config(packages=[Package(path=str(tmp_path))]))
        hook.enable_import_hook()
        try:
            module = importlib.import_module("callmap_imported_pkg")
        finally:
            hook.disable_import_hook()
            sys.modules.pop("callmap_imported_pkg", None)

        assert is_hooked(module.Imported, "work")
        session = tracing.start_session()
        assert module.Imported().work() == 42
        tracing.stop_session(session)
        assert len(session) == 2


# ---------------------------------------------------------------------------
# Runtime behaviour
# ---------------------------------------------------------------------------


class Chatty:
    def name(self):
        return "chatty"

    def __str__(self):
        return "Chatty " + self.name()

    def speak(self):
        return "hi"


class Broken:
    def __str__(self):
        raise RuntimeError("cannot render")

    def run(self, value):
        return value


class TestRuntime:
    def _hook_local(self, cls):
        Hook(Config(packages=[Package(path=__file__)])).hook_class(cls)

    def test_no_ids_are_consumed_without_a_session(self, load_fixture):
        module = load_fixture("instance_method")
        install(MethodDescriptor.of(module.InstanceMethod, "say_default"))
        reset_id_counter()
        assert module.InstanceMethod().say_default() == "default"
        assert next_id() == 1

    def test_rendering_a_receiver_does_not_record_nested_calls(self):
        """A __str__ that calls a hooked method runs with capture suspended."""
        self._hook_local(Chatty)
        session = tracing.start_session()
        assert Chatty().speak() == "hi"
        tracing.stop_session(session)

        events = session.drain()
        assert [e.event for e in events] == ["call", "return"]
        assert events[0].receiver["value"] == "Chatty chatty"

    def test_failing_display_degrades_to_a_placeholder(self):
        self._hook_local(Broken)
        session = tracing.start_session()
        assert Broken().run(7) == 7
        tracing.stop_session(session)

        call, ret = session.drain()
        assert call.receiver["value"] == "<object of type Broken>"
        assert ret.return_value["value"] == "7"

    def test_concurrent_calls_pair_up_by_id(self, load_fixture):
        module = load_fixture("singleton_method")
        Hook(Config(packages=[Package(path=str(FIXTURES))])).hook_module(module)
        session = tracing.start_session()

        def worker():
            for _ in range(50):
                module.IncludedMethod().added_method()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        tracing.stop_session(session)

        events = session.drain()
        calls = {e.id: e for e in events if e.event == "call"}
        returns = [e for e in events if e.event == "return"]
        assert len(calls) == len(returns) == 4 * 50 * 2
        assert len({e.id for e in events}) == len(events)
        for ret in returns:
            call = calls[ret.parent_id]
            assert call.id < ret.id
            assert call.thread_id == ret.thread_id

    def test_session_started_mid_call_gets_no_orphan_return(self):
        slow = Slow()
        self._hook_local(Slow)
        first = tracing.start_session()
        thread = threading.Thread(target=slow.wait)
        thread.start()
        assert slow.entered.wait(5)
        second = tracing.start_session()
        slow.release.set()
        thread.join()
        tracing.stop_session(second)
        tracing.stop_session(first)

        call, ret = first.drain()
        assert (call.event, ret.event) == ("call", "return")
        assert ret.parent_id == call.id
        assert second.drain() == []

    def test_session_stopped_mid_call_drops_the_return(self):
        slow = Slow()
        self._hook_local(Slow)
        session = tracing.start_session()
        thread = threading.Thread(target=slow.wait)
        thread.start()
        assert slow.entered.wait(5)
        tracing.stop_session(session)
        slow.release.set()
        thread.join()

        assert [e.event for e in session.drain()] == ["call"]


class Slow:
    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def wait(self):
        self.entered.set()
        self.release.wait(5)
        return "released"


# ---------------------------------------------------------------------------
# Coroutines, generators and special methods
# ---------------------------------------------------------------------------


class Worker:
    async def fetch(self, value):
        await asyncio.sleep(0)
        return value * 2

    async def fail(self):
        await asyncio.sleep(0)
        raise LookupError("missing")

    def numbers(self, count):
        for n in range(count):
            yield n
        return "done"

    async def stream(self):
        yield 1

    def __call__(self, x):
        return x + 1

    def __getitem__(self, key):
        return key * 2

    def __repr__(self):
        return "Worker()"


class TestCoroutinesAndGenerators:
    def setup_method(self):
        Hook(Config(packages=[Package(path=__file__)])).hook_class(Worker)

    def _record(self, block):
        session = tracing.start_session()
        try:
            block()
        finally:
            tracing.stop_session(session)
        return session.drain()

    def test_hooked_functions_keep_their_kind(self):
        assert is_hooked(Worker, "fetch")
        assert inspect.iscoroutinefunction(Worker.fetch)
        assert inspect.iscoroutinefunction(Worker().fetch)
        assert is_hooked(Worker, "numbers")
        assert inspect.isgeneratorfunction(Worker.numbers)

    def test_coroutine_is_recorded_while_it_runs(self):
        def block():
            coroutine = Worker().fetch(4)
            assert len(tracing.sessions[0]) == 0
            assert asyncio.run(coroutine) == 8

        call, ret = self._record(block)
        assert (call.method_id, call.event) == ("fetch", "call")
        assert [(p["name"], p["value"]) for p in call.parameters] == [("value", "4")]
        assert ret.parent_id == call.id
        assert ret.return_value["value"] == "8"

    def test_exception_raised_inside_a_coroutine_is_recorded(self):
        def block():
            with pytest.raises(LookupError, match="missing"):
                asyncio.run(Worker().fail())

        call, ret = self._record(block)
        assert call.method_id == "fail"
        assert ret.exceptions[0]["class"] == "LookupError"

    def test_generator_is_recorded_until_exhausted(self):
        def block():
            generator = Worker().numbers(3)
            assert len(tracing.sessions[0]) == 0
            assert list(generator) == [0, 1, 2]

        call, ret = self._record(block)
        assert call.method_id == "numbers"
        assert ret.parent_id == call.id
        assert ret.return_value["value"] == "done"

    def test_async_generators_are_not_hooked(self):
        assert not is_hooked(Worker, "stream")
        with pytest.raises(Ineligible, match="async generator"):
            MethodDescriptor.of(Worker, "stream")

    def test_special_methods_with_logic_are_recorded(self):
        def block():
            worker = Worker()
            assert worker(3) == 4
            assert worker[2] == 4

        events = self._record(block)
        assert [(e.event, getattr(e, "method_id", None)) for e in events] == [
            ("call", "__call__"),
            ("return", None),
            ("call", "__getitem__"),
            ("return", None),
        ]
        assert events[0].receiver["value"] == "Worker()"
        assert not is_hooked(Worker, "__repr__")
