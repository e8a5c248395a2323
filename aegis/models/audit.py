# aegis/models/audit.py
from datetime import datetime
from aegis.models import db
from aegis.models.types import JSONBCompat


class TokenAudit(db.Model):
    __tablename__ = "token_audits"

    id = db.Column(db.Integer, primary_key=True)
    # uint256 -> string decimal (no entra en BIGINT)
    trade_id = db.Column(db.String(78), unique=True, index=True, nullable=False)
    target_token = db.Column(db.String(42), index=True, nullable=False)
    start_block = db.Column(db.BigInteger, nullable=False, default=0)

    status = db.Column(db.String(20), nullable=False, default="queued")  # queued|running|committing|done|error
    started_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    finished_at = db.Column(db.DateTime, nullable=True)

    # Fuente resuelta
    provider = db.Column(db.String(20), nullable=True)        # basescan|decompiled|none
    is_decompiled = db.Column(db.Boolean, nullable=False, default=False)

    # Veredicto (inmutable una vez comiteado)
    risk_score = db.Column(db.Integer, nullable=True)         # 0..255
    verdict = db.Column(db.String(20), nullable=True)         # APPROVED|BLOCKED|ERROR
    reasoning = db.Column(db.Text, nullable=True)
    checks = db.Column(JSONBCompat(), nullable=True)          # [{name, triggered}] x8
    details = db.Column(JSONBCompat(), nullable=True)         # model scores, fallos de detectores
    calldata = db.Column(db.String(140), nullable=True)       # 0x + 68 bytes
    tx_hash = db.Column(db.String(66), nullable=True)
    error = db.Column(db.Text, nullable=True)

    @property
    def committed(self) -> bool:
        # tx emitida (aunque falte el receipt) = comiteado
        return bool(self.tx_hash) or self.status == "committing"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "trade_id": self.trade_id,
            "target_token": self.target_token,
            "start_block": self.start_block,
            "status": self.status,
            "provider": self.provider,
            "is_decompiled": self.is_decompiled,
            "risk_score": self.risk_score,
            "verdict": self.verdict,
            "reasoning": self.reasoning,
            "checks": self.checks,
            "details": self.details,
            "calldata": self.calldata,
            "tx_hash": self.tx_hash,
            "error": self.error,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
        }


def _iso(dt):
    return dt.replace(microsecond=0).isoformat() + "Z" if dt else None
