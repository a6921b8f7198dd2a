"""Storyline interchange: JSON export and import with legacy readers."""

from __future__ import annotations

from eventflow.export.importer import (
    ImportReport,
    ParsedEvent,
    import_document,
    import_parsed,
    parse_document,
    read_document,
    rekey_events,
)
from eventflow.export.json_exporter import (
    JsonExporter,
    build_document,
    export_event,
    export_filename,
    export_option,
)

__all__ = [
    "ImportReport",
    "JsonExporter",
    "ParsedEvent",
    "build_document",
    "export_event",
    "export_filename",
    "export_option",
    "import_document",
    "import_parsed",
    "parse_document",
    "read_document",
    "rekey_events",
]
