# aegis/services/audit_store.py
from datetime import datetime

from aegis.errors import DuplicateCommitError
from aegis.models import db
from aegis.models.audit import TokenAudit


def get_or_create_audit(trade_id: int, token: str, start_block: int) -> TokenAudit:
    """Un TokenAudit por trade id; un veredicto ya comiteado (o en vuelo) no se vuelve a auditar."""
    audit = TokenAudit.query.filter_by(trade_id=str(trade_id)).first()
    if audit and audit.committed:
        raise DuplicateCommitError(f"trade {trade_id} ya tiene veredicto comiteado ({audit.tx_hash})")
    if not audit:
        audit = TokenAudit(trade_id=str(trade_id), target_token=token.lower(), start_block=start_block)
        db.session.add(audit)
    audit.status = "running"
    audit.started_at = datetime.utcnow()
    audit.error = None
    db.session.commit()
    return audit


def mark_broadcast(audit: TokenAudit, tx_hash: str, calldata: bytes) -> None:
    """
    Persistir el tx_hash apenas se emite la tx, en su propio commit y antes
    de esperar el receipt: un fallo posterior no debe permitir un reenvío.
    """
    audit.tx_hash = tx_hash
    audit.calldata = "0x" + calldata.hex()
    audit.status = "committing"
    db.session.commit()


def store_outcome(audit: TokenAudit, outcome) -> None:
    audit.provider = outcome.source.provider.value
    audit.is_decompiled = outcome.source.is_decompiled
    audit.risk_score = outcome.verdict.risk_score
    audit.verdict = outcome.verdict.status.value
    audit.reasoning = outcome.verdict.reasoning
    audit.checks = outcome.verdict.checks
    audit.details = {
        "static_bits": outcome.aggregate.static_bits,
        "ai_bits": outcome.aggregate.ai_bits,
        "model_scores": outcome.aggregate.model_scores,
        "failures": outcome.aggregate.failures,
        "ai_skipped": outcome.aggregate.ai_skipped,
        "tx_status": outcome.tx_status,
    }
    audit.calldata = "0x" + outcome.calldata.hex()
    audit.tx_hash = outcome.tx_hash
    audit.status = "done"
    audit.finished_at = datetime.utcnow()


def mark_failed(audit: TokenAudit, error: Exception) -> None:
    # tx_hash (si ya se emitió) queda intacto: sigue contando como comiteado
    audit.status = "error"
    audit.verdict = "ERROR"
    audit.error = str(error)
    audit.finished_at = datetime.utcnow()
