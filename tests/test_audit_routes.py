import json

import pytest

from aegis.models import db
from aegis.models.audit import TokenAudit
from aegis.services.aggregator import RiskDetectorAggregator
from aegis.services.pipeline import AuditCollaborators
from aegis.services.source_resolver import VerifiedSource
from aegis.services.static_detectors import StaticReport

TOKEN = "0x" + "4e" * 20


class DummyAsync:
    id = "fake-task-id"


@pytest.fixture()
def queued(monkeypatch):
    calls = []

    def fake_delay(*args):
        calls.append(args)
        return DummyAsync()

    monkeypatch.setattr("aegis.tasks.audit_tasks.run_audit.delay", fake_delay)
    return calls


def test_audit_start_bad_body(client):
    rv = client.post("/api/audit/start", json={})
    assert rv.status_code == 400
    assert rv.get_json()["ok"] is False


def test_audit_start_invalid_token(client, queued):
    rv = client.post("/api/audit/start", json={"trade_id": "1", "token": "0x1234"})
    assert rv.status_code == 400
    assert queued == []


def test_audit_start_ok(client, queued):
    rv = client.post("/api/audit/start", json={"trade_id": "42", "token": TOKEN, "start_block": 100})
    assert rv.status_code == 202
    js = rv.get_json()
    assert js["ok"] is True
    assert js["status"] == "queued"

    job_id, trade_id, token, start_block = queued[0]
    assert job_id == js["job_id"]
    assert (trade_id, token.lower(), start_block) == ("42", TOKEN, 100)

    rv = client.get(f"/api/audit/status/{job_id}")
    assert rv.status_code == 200
    assert rv.get_json()["task_id"] == "fake-task-id"


def test_status_unknown_job(client):
    assert client.get("/api/audit/status/999999").status_code == 404


def test_committed_trade_is_not_audited_again(app, client, queued):
    audit = TokenAudit(
        trade_id="555",
        target_token=TOKEN,
        status="done",
        risk_score=4,
        verdict="BLOCKED",
        tx_hash="0x" + "cc" * 32,
    )
    db.session.add(audit)
    db.session.commit()

    rv = client.post("/api/audit/start", json={"trade_id": 555, "token": TOKEN})
    assert rv.status_code == 409
    assert queued == []

    rv = client.get("/api/audit/555")
    assert rv.status_code == 200
    assert rv.get_json()["audit"]["verdict"] == "BLOCKED"

    rv = client.get(f"/api/audit/?token={TOKEN}")
    assert "555" in [i["trade_id"] for i in rv.get_json()["items"]]


def test_unknown_audit(client):
    assert client.get("/api/audit/123456789").status_code == 404


# --- stream ---

class Verified:
    def fetch_verified(self, address):
        return VerifiedSource("contract Foo{}", "Foo")


class Bytecode:
    def get_bytecode(self, address):
        return "0x"


class Static:
    name = "GoPlus"

    def run(self, address):
        return StaticReport(bits=4)


def _fake_collaborators(settings, **kwargs):
    return AuditCollaborators(
        verified=Verified(),
        bytecode=Bytecode(),
        decompiler=None,
        aggregator=RiskDetectorAggregator(Static()),
    )


def _frames(rv):
    body = rv.get_data(as_text=True)
    return [json.loads(f[len("data: "):]) for f in body.split("\n\n") if f.startswith("data: ")]


def test_stream_emits_phases_and_final_verdict(client, monkeypatch):
    monkeypatch.setattr("aegis.routes.audit_routes.build_collaborators", _fake_collaborators)

    rv = client.get(f"/api/audit/stream?token={TOKEN}&trade_id=77")

    assert rv.status_code == 200
    assert rv.mimetype == "text/event-stream"
    assert rv.headers["X-Aegis-Stream-Version"] == "1"
    events = _frames(rv)
    assert events[0]["type"] == "phase"
    assert events[-1]["type"] == "final_verdict"
    assert events[-1]["payload"]["status"] == "BLOCKED"
    assert events[-1]["payload"]["score"] == 4
    assert all(e["v"] == 1 for e in events)


def test_stream_reports_pipeline_failure_as_error_event(client, monkeypatch):
    class Broken(Static):
        def run(self, address):
            return StaticReport(bits=-4)

    def broken(settings, **kwargs):
        collabs = _fake_collaborators(settings)
        collabs.aggregator = RiskDetectorAggregator(Broken())
        return collabs

    monkeypatch.setattr("aegis.routes.audit_routes.build_collaborators", broken)
    events = _frames(client.get(f"/api/audit/stream?token={TOKEN}&trade_id=78"))

    assert events[-1]["type"] == "error"
    assert "final_verdict" not in [e["type"] for e in events]


def test_stream_bad_params(client):
    assert client.get(f"/api/audit/stream?token={TOKEN}&trade_id=abc").status_code == 400
    assert client.get("/api/audit/stream?token=nope&trade_id=1").status_code == 400


def test_stream_without_rpc_is_unavailable(client):
    # TestingConfig no trae WEB3_PROVIDER_URI
    rv = client.get(f"/api/audit/stream?token={TOKEN}&trade_id=79")
    assert rv.status_code == 503


class Sender:
    def __init__(self):
        self.sent = []

    def send(self, calldata):
        self.sent.append(calldata)
        return "0x" + "ef" * 32

    def wait_for_receipt(self, tx_hash):
        return {"status": 1}


def test_streamed_commit_blocks_later_audits(client, queued, monkeypatch):
    from aegis.services.verdict_commit import VerdictCommitter

    sender = Sender()

    def committing(settings, **kwargs):
        collabs = _fake_collaborators(settings)
        collabs.committer = VerdictCommitter(sender)
        return collabs

    monkeypatch.setattr("aegis.routes.audit_routes.build_collaborators", committing)
    events = _frames(client.get(f"/api/audit/stream?token={TOKEN}&trade_id=81"))
    assert events[-1]["type"] == "final_verdict"
    assert events[-1]["payload"]["hash"] == "0x" + "ef" * 32

    # el tx_hash se persiste antes del receipt, ya visible al cerrar el stream
    audit = TokenAudit.query.filter_by(trade_id="81").one()
    assert audit.committed

    assert client.get(f"/api/audit/stream?token={TOKEN}&trade_id=81").status_code == 409
    rv = client.post("/api/audit/start", json={"trade_id": "81", "token": TOKEN})
    assert rv.status_code == 409
    assert queued == []
    assert len(sender.sent) == 1
