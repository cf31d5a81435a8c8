"""exporter.py - Pluggable destinations for finished recordings.

A recording is exported as one JSON document::

    {
      "version": "1.2",
      "metadata": {...},
      "classMap": [...],   # package -> class -> function tree
      "events": [...]      # call/return events in emission order
    }

This module defines the TraceExporter interface and two implementations:

    StreamExporter  writes the document to a stream (default: stdout).
    FileExporter    writes one ``<name>.json`` file per recording into a
                    directory.

Typical usage::

    from callmap import record
    from callmap.exporter import FileExporter

    with record(config, name="checkout flow", exporter=FileExporter("tmp/callmap")):
        checkout(cart)
"""

import json
import os
import re
import sys
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class TraceExporter(ABC):
    """Abstract base class for recording destinations.

    Example:
        >>> class MyExporter(TraceExporter):
        ...     def export(self, appmap):
        ...         send_to_remote(appmap["events"])
    """

    @abstractmethod
    def export(self, appmap: Dict[str, Any]) -> Optional[str]:
        """Persist a recording document.

        Args:
            appmap: The document produced by ``Recording.to_dict()``.

        Returns:
            Where the document was written, when that is a file; else None.
        """


class StreamExporter(TraceExporter):
    """Write recordings as JSON to a writable stream.

    Attributes:
        _stream: The writable file-like object to write to.
        _indent: ``json.dump`` indentation, None for compact output.
    """

    def __init__(self, stream=None, indent: Optional[int] = None) -> None:
        self._stream = stream or sys.stdout
        self._indent = indent

    def export(self, appmap: Dict[str, Any]) -> None:
        json.dump(appmap, self._stream, indent=self._indent)
        self._stream.write("\n")


class FileExporter(TraceExporter):
    """Write each recording to ``<directory>/<name>.json``.

    The file name comes from the recording's ``metadata.name``, with
    characters that are unsafe in file names replaced by ``_``. The directory
    is created on first export. An existing file of the same name is
    replaced.

    Example:
        >>> exporter = FileExporter("tmp/callmap/pytest")
    """

    def __init__(self, directory: str, encoding: str = "utf-8", indent: Optional[int] = 2) -> None:
        self._directory = directory
        self._encoding = encoding
        self._indent = indent

    @staticmethod
    def filename_for(name: str) -> str:
        """Return a file name (without directory) for a recording name."""
        safe = re.sub(r"[^\w\-. ]+", "_", name).strip() or "recording"
        return f"{safe}.json"

    def export(self, appmap: Dict[str, Any]) -> str:
        os.makedirs(self._directory, exist_ok=True)
        name = appmap.get("metadata", {}).get("name") or "recording"
        path = os.path.join(self._directory, self.filename_for(name))
        with open(path, "w", encoding=self._encoding) as f:
            json.dump(appmap, f, indent=self._indent)
        return path
