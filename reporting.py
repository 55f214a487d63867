"""Progress reporting for the download and assembly pipeline.

Pipeline components never print or log their progress directly, they hand
ProgressEvent objects to a reporter. Where those events end up (console,
log file, a list in a test) is decided by whoever builds the reporter.
"""

import logging
from typing import List, Protocol

from schemas import EventKind, ProgressEvent


class ProgressReporter(Protocol):
    def report(self, event: ProgressEvent) -> None:
        ...


# Events that indicate something went wrong but the run continues.
_WARNING_KINDS = {EventKind.PAGE_ERROR, EventKind.PAGE_SKIPPED, EventKind.NO_FILES}
_DEBUG_KINDS = {EventKind.MODULE_PAUSE, EventKind.ASSEMBLY_PROGRESS}


class LoggingReporter:
    """Render progress events through a standard logger."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def report(self, event: ProgressEvent) -> None:
        if event.kind in _WARNING_KINDS:
            level = logging.WARNING
        elif event.kind in _DEBUG_KINDS:
            level = logging.DEBUG
        else:
            level = logging.INFO

        if event.module_id and event.page_number:
            self.logger.log(level, "[%s] %s page %d: %s", event.kind.value, event.module_id, event.page_number, event.message)
        elif event.module_id:
            self.logger.log(level, "[%s] %s: %s", event.kind.value, event.module_id, event.message)
        else:
            self.logger.log(level, "[%s] %s", event.kind.value, event.message)


class RecordingReporter:
    """Keep every event in memory, in the order received."""

    def __init__(self):
        self.events: List[ProgressEvent] = []

    def report(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def kinds(self) -> List[EventKind]:
        return [e.kind for e in self.events]

    def of_kind(self, kind: EventKind) -> List[ProgressEvent]:
        return [e for e in self.events if e.kind is kind]
