# aegis/services/aggregator.py
"""
Risk detector aggregation.

Static and AI detectors are dispatched concurrently; the combination step
waits for all of them (or their timeout). A failing detector only loses its
own bits and is reported as a non-fatal ``detector-error`` event.

AI consensus: a bit fires when any participating model flags it (OR), or, with
strict consensus, only when every participating model flags it (AND). A model
that failed or timed out is not a participant. With no participant the AI
bits stay 0.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from aegis.errors import PipelineError
from aegis.services import streamer as ev
from aegis.services.risk_bits import (
    AI_BITS,
    STATIC_BITS,
    RiskBit,
    decode_risk_score,
    triggered_names,
)
from aegis.services.source_resolver import SourceProvider, SourceResult

logger = logging.getLogger(__name__)

Emit = Callable[..., object]


@dataclass
class AggregateResult:
    risk_score: int
    static_bits: int = 0
    ai_bits: int = 0
    model_scores: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    ai_skipped: bool = False
    provider: str = SourceProvider.NONE.value

    @property
    def checks(self) -> List[dict]:
        return decode_risk_score(self.risk_score)

    @property
    def reasoning(self) -> str:
        flagged = triggered_names(self.risk_score)
        parts = [("Flagged: " + ", ".join(flagged)) if flagged else "No risk flags raised"]
        if self.ai_skipped:
            parts.append("AI review skipped: no readable source")
        elif self.provider == SourceProvider.DECOMPILED.value:
            parts.append("AI reviewed decompiled bytecode")
        if self.failures:
            parts.append("Detector failures: " + ", ".join(sorted(self.failures)))
        return ". ".join(parts)


def combine_ai_bits(model_scores: Sequence[int], strict_consensus: bool = False) -> int:
    scores = list(model_scores)
    if not scores:
        return 0
    combined = scores[0]
    for s in scores[1:]:
        combined = (combined & s) if strict_consensus else (combined | s)
    return combined & int(AI_BITS)


def _check_bits(value, who: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise PipelineError(f"{who} returned a non-integer score: {value!r}")
    if value < 0:
        raise PipelineError(f"{who} returned a negative score: {value}")
    return value


class _Channel:
    """Per-detector emitter that goes quiet once the aggregator stops waiting."""

    def __init__(self, emit: Optional[Emit], stopped: threading.Event):
        self._emit = emit
        self._stopped = stopped

    def __call__(self, event_type: str, **fields) -> None:
        if self._emit is None or self._stopped.is_set():
            return
        self._emit(event_type, **fields)


class RiskDetectorAggregator:
    def __init__(
        self,
        static_detector,
        ai_detectors: Sequence = (),
        *,
        strict_consensus: bool = False,
        detector_timeout: float = 60.0,
    ):
        self.static_detector = static_detector
        self.ai_detectors = list(ai_detectors)
        self.strict_consensus = strict_consensus
        self.detector_timeout = detector_timeout

    # -------- detector runners (worker threads) --------

    def _run_static(self, address: str, emit: _Channel) -> int:
        name = getattr(self.static_detector, "name", "Static Analysis")
        emit(ev.STATIC_ANALYSIS, source=name, status="pending")
        report = self.static_detector.run(address)
        emit(ev.STATIC_ANALYSIS, source=name, status="OK", bits=report.bits, details=report.details)
        return report.bits

    def _run_ai(self, detector, address: str, source: SourceResult, emit: _Channel) -> int:
        emit(ev.LLM_START, model=detector.name, provenance=source.provenance)
        bits = detector.run(
            address,
            source,
            on_chunk=lambda text: emit(ev.LLM_CHUNK, model=detector.name, text=text),
        )
        emit(ev.LLM_SCORE, model=detector.name, bit=bits)
        return bits

    # -------- combination --------

    def run(self, address: str, source: SourceResult, emit: Optional[Emit] = None) -> AggregateResult:
        stopped = threading.Event()
        channel = _Channel(emit, stopped)

        skip_ai = source.provider is SourceProvider.NONE or not source.source
        jobs = {}
        if self.static_detector is not None:
            jobs["static"] = (getattr(self.static_detector, "name", "Static Analysis"), None)
        if not skip_ai:
            labels = set()
            for i, det in enumerate(self.ai_detectors):
                # etiqueta única: dos entradas del mismo modelo votan por separado
                label = det.name if det.name not in labels else f"{det.name}#{i}"
                labels.add(label)
                jobs[f"ai:{i}"] = (label, det)

        result = AggregateResult(risk_score=0, ai_skipped=skip_ai, provider=source.provider.value)
        outcomes: Dict[str, int] = {}

        if jobs:
            pool = ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="detector")
            try:
                futures = {}
                for key, (label, det) in jobs.items():
                    if det is None:
                        fut = pool.submit(self._run_static, address, channel)
                    else:
                        fut = pool.submit(self._run_ai, det, address, source, channel)
                    futures[fut] = (key, label)

                done, pending = wait(futures, timeout=self.detector_timeout)
                stopped.set()

                for fut in pending:
                    key, label = futures[fut]
                    fut.cancel()
                    result.failures[label] = "timed out"
                for fut in done:
                    key, label = futures[fut]
                    exc = fut.exception()
                    if exc is not None:
                        if isinstance(exc, PipelineError):
                            raise exc
                        result.failures[label] = str(exc) or exc.__class__.__name__
                        continue
                    outcomes[key] = _check_bits(fut.result(), label)
            finally:
                stopped.set()
                pool.shutdown(wait=False, cancel_futures=True)

        # errores no fatales: se reportan después de cerrar los canales
        for label, message in result.failures.items():
            logger.warning("Detector %s failed for %s: %s", label, address, message)
            if emit is not None:
                emit(ev.DETECTOR_ERROR, detector=label, message=message)

        static_bits = outcomes.get("static", 0) & int(STATIC_BITS)
        if source.provider is SourceProvider.NONE:
            static_bits |= int(RiskBit.UNVERIFIED)

        model_scores = {
            label: outcomes[key] & int(AI_BITS)
            for key, (label, det) in jobs.items()
            if det is not None and key in outcomes
        }
        ai_bits = 0 if skip_ai else combine_ai_bits(model_scores.values(), self.strict_consensus)

        result.static_bits = static_bits
        result.ai_bits = ai_bits
        result.model_scores = model_scores
        result.risk_score = _check_bits(static_bits | ai_bits, "aggregator")
        logger.info(
            "Aggregated risk for %s: score=%d static=%d ai=%d strict=%s",
            address, result.risk_score, static_bits, ai_bits, self.strict_consensus,
        )
        return result
