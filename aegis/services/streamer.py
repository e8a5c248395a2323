# aegis/services/streamer.py
"""
Ordered progress feed for one audit run.

Events are plain dicts tagged with ``type`` and the wire version ``v``. The
streamer enforces three rules: a phase reports ``running`` before its terminal
status, ``final_verdict`` is only accepted once every phase is terminal, and
exactly one terminal event (``final_verdict`` or ``error``) closes the run.
"""
import json
import queue
import threading
from typing import Dict, Iterator, Optional

from aegis.errors import PipelineError

STREAM_PROTOCOL_VERSION = 1

PHASE = "phase"
STATIC_ANALYSIS = "static-analysis"
LLM_START = "llm-reasoning-start"
LLM_CHUNK = "llm-reasoning-chunk"
LLM_SCORE = "llm-score"
DETECTOR_ERROR = "detector-error"
TX = "tx"
TX_STATUS = "tx-status"
FINAL_VERDICT = "final_verdict"
FATAL_ERROR = "error"

EVENT_TYPES = {
    PHASE, STATIC_ANALYSIS, LLM_START, LLM_CHUNK, LLM_SCORE,
    DETECTOR_ERROR, TX, TX_STATUS, FINAL_VERDICT, FATAL_ERROR,
}
TERMINAL_TYPES = {FINAL_VERDICT, FATAL_ERROR}

PHASE_RUNNING = "running"
PHASE_DONE = "done"
PHASE_ERROR = "error"

_CLOSED = object()


class AuditStreamer:
    def __init__(self, maxsize: int = 0):
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._phases: Dict[str, str] = {}
        self._terminal: Optional[str] = None
        self._closed = False

    # -------- producer side --------

    @property
    def terminated(self) -> bool:
        return self._terminal is not None

    def emit(self, event_type: str, **fields) -> dict:
        if event_type not in EVENT_TYPES:
            raise PipelineError(f"unknown stream event type: {event_type}")
        with self._lock:
            if self._terminal is not None:
                raise PipelineError(f"stream already terminated with '{self._terminal}'")
            if self._closed:
                raise PipelineError("stream already closed")
            if event_type == PHASE:
                self._check_phase(fields.get("phase"), fields.get("status"))
            if event_type == FINAL_VERDICT:
                running = [p for p, s in self._phases.items() if s == PHASE_RUNNING]
                if running:
                    raise PipelineError(f"final verdict before phases finished: {running}")
            if event_type in TERMINAL_TYPES:
                self._terminal = event_type

            event = {"v": STREAM_PROTOCOL_VERSION, "type": event_type, **fields}
            self._queue.put(event)
            if event_type in TERMINAL_TYPES:
                self._queue.put(_CLOSED)
                self._closed = True
        return event

    def _check_phase(self, phase: Optional[str], status: Optional[str]) -> None:
        if not phase:
            raise PipelineError("phase event without a phase label")
        current = self._phases.get(phase)
        if status == PHASE_RUNNING:
            if current is not None:
                raise PipelineError(f"phase '{phase}' already started")
        elif status in (PHASE_DONE, PHASE_ERROR):
            if current != PHASE_RUNNING:
                raise PipelineError(f"phase '{phase}' finished without starting")
        else:
            raise PipelineError(f"invalid phase status: {status}")
        self._phases[phase] = status

    def start_phase(self, phase: str) -> dict:
        return self.emit(PHASE, phase=phase, status=PHASE_RUNNING)

    def finish_phase(self, phase: str) -> dict:
        return self.emit(PHASE, phase=phase, status=PHASE_DONE)

    def fail_phase(self, phase: str) -> dict:
        return self.emit(PHASE, phase=phase, status=PHASE_ERROR)

    def running_phases(self):
        with self._lock:
            return [p for p, s in self._phases.items() if s == PHASE_RUNNING]

    def final_verdict(self, payload: dict) -> dict:
        return self.emit(FINAL_VERDICT, payload=payload)

    def fatal(self, message: str, **fields) -> dict:
        """Fail any open phase, then close the run with a single error event."""
        for phase in self.running_phases():
            self.fail_phase(phase)
        return self.emit(FATAL_ERROR, message=message, **fields)

    def close(self) -> None:
        """End the feed. Without a terminal event consumers see an aborted run."""
        with self._lock:
            if not self._closed:
                self._closed = True
                self._queue.put(_CLOSED)

    # -------- consumer side --------

    def events(self, timeout: Optional[float] = None) -> Iterator[dict]:
        while True:
            item = self._queue.get(timeout=timeout)
            if item is _CLOSED:
                return
            yield item

    def sse(self, timeout: Optional[float] = None) -> Iterator[str]:
        for event in self.events(timeout=timeout):
            yield format_sse(event)


def format_sse(event: dict) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"


def parse_sse(frame: str) -> dict:
    line = frame.strip()
    if line.startswith("data: "):
        line = line[len("data: "):]
    return json.loads(line)
