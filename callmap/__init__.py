"""callmap/__init__.py - Public API for the callmap package.

callmap records what a running Python program does. Methods of configured
packages are wrapped so that every invocation emits a call event before the
body runs and a return event after it completes or raises. Events go to every
active recording session, and the methods that fired are rendered as a
package -> class -> function class map.

Quick start:
    from callmap import Config, Package, record
    from callmap.exporter import FileExporter

    # 1. Say which code to instrument
    config = Config(name="shop", packages=[Package(path="shop", exclude=["shop.vendor.*"])])

    # 2. Record a block of code; export it as JSON on exit
    with record(config, name="checkout", exporter=FileExporter("tmp/callmap")) as recording:
        checkout(cart)

    # 3. Or drive hooks and sessions by hand
    from callmap import Hook, tracing
    Hook(config).enable()
    session = tracing.start_session()
    ...
    tracing.stop_session(session)
    while session.has_pending_event():
        print(session.pop_event().to_dict())

Exported names:
    Config, Package:   Which methods are hooked; parameters to redact.
    Hook:              Applies a Config to modules, classes and imports.
    install/uninstall: Hook or restore a single MethodDescriptor.
    tracing:           The process-wide session registry.
    record, Recording: Session start/stop glue producing a JSON document.
    build_class_map:   The package -> class -> function tree of methods.
    RequestRecorder:   WSGI middleware recording each HTTP request.
    StreamExporter, FileExporter: Where finished recordings are written.
"""

from .class_map import ClassMapNode, build_class_map
from .config import Config, Package
from .errors import AlreadyHooked, CallmapError, Ineligible
from .event import MethodCall, MethodReturn, emit_call, emit_return
from .exporter import FileExporter, StreamExporter, TraceExporter
from .hook import Hook, HookedMethod, MethodDescriptor, hooked_methods, install, uninstall, unhook_all
from .identity import display_string, next_id, reset_id_counter
from .recorder import Recording, record
from .tracer import Session, Tracing, tracing
from .web import RequestRecorder

__all__ = [
    "AlreadyHooked",
    "CallmapError",
    "ClassMapNode",
    "Config",
    "FileExporter",
    "Hook",
    "HookedMethod",
    "Ineligible",
    "MethodCall",
    "MethodDescriptor",
    "MethodReturn",
    "Package",
    "Recording",
    "RequestRecorder",
    "Session",
    "StreamExporter",
    "TraceExporter",
    "Tracing",
    "build_class_map",
    "display_string",
    "emit_call",
    "emit_return",
    "hooked_methods",
    "install",
    "next_id",
    "record",
    "reset_id_counter",
    "tracing",
    "uninstall",
    "unhook_all",
]
__version__ = "0.1.0"
