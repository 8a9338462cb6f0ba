"""
Telemetry sink for pipeline outcome events.

Recording is fire-and-forget: a slow or failing sink never blocks or fails
the pipeline. Async sinks are scheduled on the running loop. Sync sinks run in
the loop's default executor unless they set `non_blocking = True`, in which
case they are called inline.
"""

import asyncio
import inspect
import logging
from typing import Any, List, Set

from ..models import TelemetryEvent

logger = logging.getLogger(__name__)

# Keeps scheduled sink coroutines alive until they finish
_pending_records: Set["asyncio.Future[Any]"] = set()


class LoggingTelemetrySink:
    """Default sink: writes each event as a structured log line."""

    non_blocking = True

    def __init__(self, logger_name: str = "adforge.telemetry"):
        self._logger = logging.getLogger(logger_name)

    def record(self, event: TelemetryEvent) -> None:
        self._logger.info(
            f"pipeline_outcome request_id={event.request_id} status={event.status} "
            f"mode={event.mode} gate_score={event.gate_score} gate_verdict={event.gate_verdict} "
            f"stages={','.join(event.stages_completed)} degraded={','.join(event.degraded_stages)} "
            f"error_kind={event.error_kind} duration_ms={event.duration_ms}"
        )


class InMemoryTelemetrySink:
    """Collects events in a list. Useful for tests and local debugging."""

    non_blocking = True

    def __init__(self):
        self.events: List[TelemetryEvent] = []

    def record(self, event: TelemetryEvent) -> None:
        self.events.append(event)


def _log_record_failure(future: "asyncio.Future[Any]") -> None:
    _pending_records.discard(future)
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning(f"Telemetry sink failed asynchronously: {type(exc).__name__}: {exc}")


def _record_in_thread(sink: Any, event: TelemetryEvent) -> None:
    result = sink.record(event)
    if inspect.iscoroutine(result):
        result.close()
        logger.warning(f"Telemetry sink {type(sink).__name__} returned a coroutine from a sync record(); event dropped")


def _track(future: "asyncio.Future[Any]") -> None:
    _pending_records.add(future)
    future.add_done_callback(_log_record_failure)


def emit_event(sink: Any, event: TelemetryEvent) -> None:
    """Hand an event to the sink without waiting on it."""
    if sink is None:
        return

    inline = inspect.iscoroutinefunction(sink.record) or getattr(sink, "non_blocking", False) is True
    if not inline:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            inline = True
        else:
            _track(loop.run_in_executor(None, _record_in_thread, sink, event))
            return

    try:
        result = sink.record(event)
    except Exception as e:
        logger.warning(f"Telemetry sink failed: {type(e).__name__}: {e}")
        return

    if inspect.isawaitable(result):
        try:
            future = asyncio.ensure_future(result)
        except RuntimeError as e:
            # No running loop; close the coroutine so it is not left unawaited
            if inspect.iscoroutine(result):
                result.close()
            logger.warning(f"Telemetry event dropped, no running event loop: {e}")
            return
        _track(future)
