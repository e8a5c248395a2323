# aegis/services/risk_bits.py
import enum
from dataclasses import dataclass, field
from typing import Dict, List

from aegis.errors import PipelineError

MAX_RISK_SCORE = 0xFF


class RiskBit(enum.IntFlag):
    UNVERIFIED = 1 << 0
    SELL_RESTRICTION = 1 << 1
    HONEYPOT = 1 << 2
    PROXY = 1 << 3
    OBFUSCATED_TAX = 1 << 4
    PRIVILEGE_ESCALATION = 1 << 5
    EXTERNAL_CALL_RISK = 1 << 6
    LOGIC_BOMB = 1 << 7


# Orden = posición del bit (lo consume el frontend tal cual)
RISK_BIT_NAMES = [
    "Unverified Code",
    "Sell Restriction",
    "Known Honeypot",
    "Upgradeable Proxy",
    "Obfuscated Tax",
    "Privilege Escalation",
    "External Call Risk",
    "Logic Bomb",
]

STATIC_BITS = RiskBit.UNVERIFIED | RiskBit.SELL_RESTRICTION | RiskBit.HONEYPOT | RiskBit.PROXY
AI_BITS = RiskBit.OBFUSCATED_TAX | RiskBit.PRIVILEGE_ESCALATION | RiskBit.EXTERNAL_CALL_RISK | RiskBit.LOGIC_BOMB

# Keys the LLM answers with, in bit order (bits 4..7)
AI_FLAG_KEYS: Dict[str, RiskBit] = {
    "obfuscated_tax": RiskBit.OBFUSCATED_TAX,
    "privilege_escalation": RiskBit.PRIVILEGE_ESCALATION,
    "external_call_risk": RiskBit.EXTERNAL_CALL_RISK,
    "logic_bomb": RiskBit.LOGIC_BOMB,
}


class VerdictStatus(str, enum.Enum):
    APPROVED = "APPROVED"
    BLOCKED = "BLOCKED"
    ERROR = "ERROR"


def decode_risk_score(score: int) -> List[dict]:
    """Bitmask -> ordered checks list ({name, triggered}) for all 8 bits."""
    return [
        {"name": name, "triggered": bool(score & (1 << i))}
        for i, name in enumerate(RISK_BIT_NAMES)
    ]


def encode_checks(checks: List[dict]) -> int:
    """Inverse of decode_risk_score; checks are matched by name."""
    score = 0
    for i, name in enumerate(RISK_BIT_NAMES):
        for c in checks:
            if c.get("name") == name and c.get("triggered"):
                score |= 1 << i
    return score


def interpret_verdict(score: int) -> VerdictStatus:
    if score < 0:
        return VerdictStatus.ERROR
    if score == 0:
        return VerdictStatus.APPROVED
    return VerdictStatus.BLOCKED


def triggered_names(score: int) -> List[str]:
    return [c["name"] for c in decode_risk_score(score) if c["triggered"]]


@dataclass(frozen=True)
class RiskVerdict:
    """
    Final verdict for one trade id. Only non-negative 8-bit scores can be
    represented; an out-of-range score is a pipeline fault and raises before
    the verdict exists, so it can never reach the commit path.
    """
    trade_id: int
    risk_score: int
    reasoning: str = ""
    checks: List[dict] = field(default_factory=list)

    def __post_init__(self):
        if isinstance(self.risk_score, bool) or not isinstance(self.risk_score, int):
            raise PipelineError(f"risk score must be an int, got {self.risk_score!r}")
        if not 0 <= self.risk_score <= MAX_RISK_SCORE:
            raise PipelineError(f"risk score out of range: {self.risk_score}")
        if self.trade_id < 0:
            raise PipelineError(f"trade id must be non-negative: {self.trade_id}")
        if not self.checks:
            object.__setattr__(self, "checks", decode_risk_score(self.risk_score))

    @property
    def status(self) -> VerdictStatus:
        return interpret_verdict(self.risk_score)

    def to_payload(self, target_token: str = "") -> dict:
        return {
            "tradeId": str(self.trade_id),
            "status": self.status.value,
            "score": self.risk_score,
            "targetToken": target_token,
            "reasoning": self.reasoning,
            "checks": self.checks,
        }
