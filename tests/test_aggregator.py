import threading

import pytest

from aegis.errors import PipelineError
from aegis.services.aggregator import RiskDetectorAggregator, combine_ai_bits
from aegis.services.risk_bits import RiskBit
from aegis.services.source_resolver import SourceProvider, SourceResult
from aegis.services.static_detectors import StaticReport

TOKEN = "0x" + "cd" * 20
VERIFIED = SourceResult("contract Foo{}", "Foo", SourceProvider.VERIFIED)
DECOMPILED = SourceResult("function f(){}", "Decompiled_0xCdCdCdCd", SourceProvider.DECOMPILED, True)


class FakeStatic:
    name = "GoPlus"

    def __init__(self, bits=0, error=None, block=None):
        self.bits, self.error, self.block = bits, error, block

    def run(self, address):
        if self.block is not None:
            self.block.wait(5)
        if self.error:
            raise self.error
        return StaticReport(bits=self.bits, details={"is_honeypot": "0"})


class FakeModel:
    def __init__(self, name, bits=0, error=None):
        self.name, self.bits, self.error = name, bits, error
        self.calls = 0

    def run(self, address, source, on_chunk=None):
        self.calls += 1
        if on_chunk:
            on_chunk("thinking...")
        if self.error:
            raise self.error
        return self.bits


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event_type, **fields):
        self.events.append({"type": event_type, **fields})

    def of(self, event_type):
        return [e for e in self.events if e["type"] == event_type]


def test_combine_or_and_strict():
    assert combine_ai_bits([0x10, 0x20]) == 0x30
    assert combine_ai_bits([0x30, 0x10], strict_consensus=True) == 0x10
    assert combine_ai_bits([0x10, 0x20], strict_consensus=True) == 0
    assert combine_ai_bits([]) == 0
    # nunca fuera de los bits 4..7
    assert combine_ai_bits([0xFF]) == 0xF0


def test_or_consensus_merges_static_and_ai_bits():
    emit = Recorder()
    agg = RiskDetectorAggregator(
        FakeStatic(bits=int(RiskBit.HONEYPOT)),
        [FakeModel("gpt-4o", 0x10), FakeModel("llama", 0x20)],
    )
    res = agg.run(TOKEN, VERIFIED, emit=emit)

    assert res.risk_score == 0x04 | 0x10 | 0x20
    assert res.static_bits == 0x04
    assert res.model_scores == {"gpt-4o": 0x10, "llama": 0x20}
    assert res.failures == {}
    assert [e["status"] for e in emit.of("static-analysis")] == ["pending", "OK"]
    assert {e["model"] for e in emit.of("llm-score")} == {"gpt-4o", "llama"}
    assert all(e["provenance"] == "verified" for e in emit.of("llm-reasoning-start"))
    assert emit.of("llm-reasoning-chunk")


def test_strict_consensus_requires_every_model():
    agg = RiskDetectorAggregator(
        FakeStatic(),
        [FakeModel("a", 0x30), FakeModel("b", 0x10)],
        strict_consensus=True,
    )
    assert agg.run(TOKEN, VERIFIED).ai_bits == 0x10


def test_failed_model_does_not_vote():
    emit = Recorder()
    agg = RiskDetectorAggregator(
        FakeStatic(),
        [FakeModel("a", 0x30), FakeModel("b", error=RuntimeError("503 from provider"))],
        strict_consensus=True,
    )
    res = agg.run(TOKEN, VERIFIED, emit=emit)

    assert res.ai_bits == 0x30
    assert "b" in res.failures
    errors = emit.of("detector-error")
    assert len(errors) == 1 and errors[0]["detector"] == "b"


def test_all_models_failing_leaves_ai_bits_clear():
    agg = RiskDetectorAggregator(FakeStatic(bits=2), [FakeModel("a", error=ValueError("bad json"))])
    res = agg.run(TOKEN, VERIFIED)
    assert res.ai_bits == 0
    assert res.risk_score == 2


def test_static_failure_keeps_ai_result():
    agg = RiskDetectorAggregator(FakeStatic(error=ConnectionError("goplus down")), [FakeModel("a", 0x80)])
    res = agg.run(TOKEN, VERIFIED)
    assert res.risk_score == 0x80
    assert "GoPlus" in res.failures


def test_no_source_sets_unverified_and_skips_ai():
    model = FakeModel("a", 0xF0)
    res = RiskDetectorAggregator(FakeStatic(), [model]).run(TOKEN, SourceResult.empty())

    assert res.risk_score == int(RiskBit.UNVERIFIED)
    assert res.ai_skipped is True
    assert model.calls == 0
    assert "AI review skipped" in res.reasoning


def test_decompiled_source_still_reviewed():
    emit = Recorder()
    res = RiskDetectorAggregator(FakeStatic(), [FakeModel("a", 0x40)]).run(TOKEN, DECOMPILED, emit=emit)
    assert res.risk_score == 0x40
    assert emit.of("llm-reasoning-start")[0]["provenance"] == "decompiled"
    assert "decompiled" in res.reasoning


def test_static_bits_outside_static_range_are_dropped():
    res = RiskDetectorAggregator(FakeStatic(bits=0x10 | 0x01)).run(TOKEN, VERIFIED)
    assert res.risk_score == 0x01


def test_slow_detector_times_out_without_blocking():
    release = threading.Event()
    agg = RiskDetectorAggregator(FakeStatic(bits=4, block=release), [FakeModel("a", 0x10)], detector_timeout=0.2)
    try:
        res = agg.run(TOKEN, VERIFIED)
    finally:
        release.set()
    assert res.failures == {"GoPlus": "timed out"}
    assert res.risk_score == 0x10


def test_negative_detector_score_is_pipeline_error():
    with pytest.raises(PipelineError):
        RiskDetectorAggregator(FakeStatic(), [FakeModel("a", -1)]).run(TOKEN, VERIFIED)


def test_same_named_models_vote_separately_under_strict_consensus():
    agg = RiskDetectorAggregator(
        None,
        [FakeModel("gpt-4o", bits=0x30), FakeModel("gpt-4o", bits=0x10)],
        strict_consensus=True,
    )
    res = agg.run(TOKEN, VERIFIED)

    assert res.ai_bits == 0x10
    assert sorted(res.model_scores.values()) == [0x10, 0x30]
    assert len(res.model_scores) == 2
