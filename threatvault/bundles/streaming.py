"""Progress streaming for large collection bundle imports.

Wraps the import coordinator and turns its progress callbacks into a
sequence of events that always ends with exactly one terminal event,
``complete`` or ``error``. A rejected bundle is reported in the terminal
event's payload; it never raises out of the stream.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from threatvault.core.exceptions import BundleRejectedError, ThreatVaultError
from threatvault.core.models import ImportOptions

from .importer import PHASE_CLASSIFYING, PHASE_SAVING, PHASE_VALIDATING, ImportCoordinator

logger = logging.getLogger(__name__)

EVENT_PROGRESS = "progress"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"

# Share of overall progress reached at the start of each phase
PHASE_OFFSETS = {PHASE_VALIDATING: 0.0, PHASE_CLASSIFYING: 5.0, PHASE_SAVING: 90.0}
PHASE_SPANS = {PHASE_VALIDATING: 5.0, PHASE_CLASSIFYING: 85.0, PHASE_SAVING: 10.0}

_DONE = object()


@dataclass
class ProgressEvent:
    event: str
    data: Dict[str, Any]

    @property
    def terminal(self) -> bool:
        return self.event in (EVENT_COMPLETE, EVENT_ERROR)


def to_sse(event: ProgressEvent) -> str:
    """Format an event for a text/event-stream response."""
    return f"event: {event.event}\ndata: {json.dumps(event.data)}\n\n"


def error_payload(exc: Exception) -> Dict[str, Any]:
    """Terminal error payload, shaped like the non-streaming error response."""
    if isinstance(exc, BundleRejectedError):
        return {"status_code": 400, **exc.to_dict()}
    if isinstance(exc, ThreatVaultError):
        return {"status_code": 500, "error": exc.message, "error_code": exc.error_code}
    return {"status_code": 500, "error": "Internal server error"}


class ImportProgressStreamer:
    """Runs an import and yields progress events as objects are classified."""

    def __init__(self, coordinator: ImportCoordinator, progress_every: int = 1):
        if progress_every < 1:
            raise ValueError("progress_every must be at least 1")
        self.coordinator = coordinator
        self.progress_every = progress_every

    async def stream(self, bundle: Any, options: Optional[ImportOptions] = None) -> AsyncIterator[ProgressEvent]:
        queue: asyncio.Queue = asyncio.Queue()

        async def on_progress(phase: str, processed: int, total: int, **detail) -> None:
            if phase == PHASE_CLASSIFYING and processed % self.progress_every and processed != total:
                return
            await queue.put(self._progress_event(phase, processed, total, detail))

        async def run():
            try:
                return await self.coordinator.import_bundle(bundle, options, progress=on_progress)
            finally:
                await queue.put(_DONE)

        task = asyncio.create_task(run())
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item

            try:
                result = await task
            except Exception as e:
                if not isinstance(e, BundleRejectedError):
                    logger.error(f"Streaming import failed: {e}")
                yield ProgressEvent(EVENT_ERROR, error_payload(e))
            else:
                yield ProgressEvent(EVENT_COMPLETE, {
                    "phase": "complete",
                    "percentage": 100,
                    "result": result.to_dict(),
                    "categories": result.categories.to_dict(),
                })
        finally:
            if not task.done():
                # The consumer went away; let the import finish rather than cancel it mid-commit
                task.add_done_callback(_log_detached_import)

    def _progress_event(self, phase: str, processed: int, total: int, detail: Dict[str, Any]) -> ProgressEvent:
        phase_percentage = round(processed / total * 100, 1) if total else 0.0
        percentage = round(PHASE_OFFSETS[phase] + PHASE_SPANS[phase] * phase_percentage / 100, 1)
        return ProgressEvent(EVENT_PROGRESS, {
            "phase": phase,
            "processed": processed,
            "total": total,
            "percentage": percentage,
            "phasePercentage": phase_percentage,
            **detail,
        })


def _log_detached_import(task: asyncio.Task) -> None:
    if task.cancelled():
        logger.warning("Detached streaming import was cancelled")
    elif task.exception() is not None:
        logger.error(f"Detached streaming import failed: {task.exception()}")
    else:
        logger.info("Detached streaming import finished")
