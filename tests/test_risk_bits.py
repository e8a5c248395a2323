import pytest

from aegis.errors import PipelineError
from aegis.services.risk_bits import (
    RISK_BIT_NAMES,
    RiskBit,
    RiskVerdict,
    VerdictStatus,
    decode_risk_score,
    encode_checks,
    interpret_verdict,
    triggered_names,
)


def test_bit_names_follow_bit_order():
    assert RISK_BIT_NAMES[0] == "Unverified Code"
    assert RISK_BIT_NAMES[2] == "Known Honeypot"
    assert RISK_BIT_NAMES[5] == "Privilege Escalation"
    assert RISK_BIT_NAMES[7] == "Logic Bomb"
    assert int(RiskBit.LOGIC_BOMB) == 1 << 7


def test_score_4_is_honeypot_only_and_blocked():
    checks = decode_risk_score(4)
    assert len(checks) == 8
    assert [c["name"] for c in checks if c["triggered"]] == ["Known Honeypot"]
    assert interpret_verdict(4) is VerdictStatus.BLOCKED


def test_score_36_flags_honeypot_and_privilege_escalation():
    assert triggered_names(36) == ["Known Honeypot", "Privilege Escalation"]
    assert interpret_verdict(36) is VerdictStatus.BLOCKED


def test_zero_is_approved_and_negative_is_error():
    assert interpret_verdict(0) is VerdictStatus.APPROVED
    assert triggered_names(0) == []
    assert interpret_verdict(-1) is VerdictStatus.ERROR


def test_checks_encode_back_to_score():
    for score in range(256):
        assert encode_checks(decode_risk_score(score)) == score


def test_verdict_payload():
    v = RiskVerdict(trade_id=42, risk_score=5, reasoning="Flagged: Unverified Code, Known Honeypot")
    payload = v.to_payload(target_token="0xToken")
    assert payload["tradeId"] == "42"
    assert payload["status"] == "BLOCKED"
    assert payload["score"] == 5
    assert payload["targetToken"] == "0xToken"
    assert [c["name"] for c in payload["checks"] if c["triggered"]] == ["Unverified Code", "Known Honeypot"]


@pytest.mark.parametrize("score", [-1, 256, True, "4"])
def test_verdict_rejects_unrepresentable_scores(score):
    with pytest.raises(PipelineError):
        RiskVerdict(trade_id=1, risk_score=score)
