"""recorder.py - Start/stop glue bundling a session into a recording.

``record()`` is the one-call integration point for scripts and test
harnesses: it hooks the configured packages, opens a session, and on exit
closes it and turns the captured events plus the class map of the methods
that fired into a single document.

Usage::

    from callmap import Config, record

    with record(Config.from_yaml("callmap.yml"), name="signup") as recording:
        signup("alice")
    print(len(recording.events))
"""

import logging
import platform
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from .class_map import class_map_dicts
from .config import Config
from .event import Event
from .exporter import TraceExporter
from .hook import Hook, HookedMethod
from .identity import reset_id_counter
from .tracer import Session, tracing

logger = logging.getLogger(__name__)

APPMAP_VERSION = "1.2"


class Recording:
    """Events and observed methods of one session.

    Attributes:
        config (Config): The configuration the code was hooked with.
        name (str): Human readable recording name, used for file names.
        events (list[Event]): Captured events, filled by ``stop()``.
        methods (list[HookedMethod]): Methods that fired, filled by ``stop()``.
    """

    def __init__(self, config: Config, name: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.config = config
        self.name = name or config.name
        self.metadata = dict(metadata or {})
        self.events: List[Event] = []
        self.methods: List[HookedMethod] = []
        self.session: Optional[Session] = None
        self.started_at: Optional[datetime] = None

    def start(self) -> None:
        """Open the session. Event ids restart at 1 if no other session is active."""
        if not tracing.enabled:
            reset_id_counter()
        self.started_at = datetime.now(timezone.utc)
        self.session = tracing.start_session()

    def stop(self) -> None:
        """Close the session and collect its events and observed methods."""
        if self.session is None:
            return
        tracing.stop_session(self.session)
        self.events = self.session.drain()
        self.methods = self.session.observed_methods()
        self.session = None
        logger.info("Recorded %d events in %r", len(self.events), self.name)

    def class_map(self) -> List[Dict[str, Any]]:
        return class_map_dicts(self.methods, self.config)

    def to_dict(self) -> Dict[str, Any]:
        from . import __version__

        metadata = {
            "name": self.name,
            "app": self.config.name,
            "language": {
                "name": "python",
                "engine": platform.python_implementation(),
                "version": platform.python_version(),
            },
            "recorder": {"name": "callmap", "version": __version__},
        }
        if self.started_at is not None:
            metadata["timestamp"] = self.started_at.strftime("%Y-%m-%dT%H:%M:%SZ")
        metadata.update(self.metadata)
        return {
            "version": APPMAP_VERSION,
            "metadata": metadata,
            "classMap": self.class_map(),
            "events": [event.to_dict() for event in self.events],
        }

    def save(self, exporter: TraceExporter) -> Optional[str]:
        return exporter.export(self.to_dict())


@contextmanager
def record(
    config: Optional[Config] = None,
    name: Optional[str] = None,
    exporter: Optional[TraceExporter] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Iterator[Recording]:
    """Hook ``config`` and record everything run inside the ``with`` block.

    Methods stay hooked after the block; the import hook installed for the
    block is removed. The recording is exported even when the block raises.

    Args:
        config: Hooking configuration. Defaults to ``Config.load()``.
        name: Recording name. Defaults to ``config.name``.
        exporter: Where to save the recording on exit, if anywhere.
        metadata: Extra metadata merged into the document.
    """
    config = config or Config.load()
    hook = Hook(config)
    hook.enable()
    recording = Recording(config, name, metadata)
    recording.start()
    try:
        yield recording
    finally:
        recording.stop()
        hook.disable_import_hook()
        if exporter is not None:
            recording.save(exporter)
