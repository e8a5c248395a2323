# aegis/tasks/audit_tasks.py
from datetime import datetime
from functools import partial

from celery import shared_task
from flask import current_app

from aegis.config import AuditSettings
from aegis.models import db, AnalysisJob
from aegis.services.audit_store import get_or_create_audit, mark_broadcast, mark_failed, store_outcome
from aegis.services.pipeline import AuditRequest, build_collaborators, run_audit_pipeline


@shared_task(name="audit.run")
def run_audit(job_id: int, trade_id: str, token: str, start_block: int = 0):
    job = db.session.get(AnalysisJob, job_id)
    if not job:
        return {"error": "job no encontrado", "job_id": job_id}

    job.status = "running"
    db.session.commit()

    audit = None
    try:
        request = AuditRequest(trade_id=int(trade_id), target_token=token, start_block=int(start_block or 0))
        audit = get_or_create_audit(request.trade_id, request.target_token, request.start_block)

        settings = AuditSettings.from_mapping(current_app.config)
        outcome = run_audit_pipeline(
            request,
            settings,
            build_collaborators(settings),
            on_broadcast=partial(mark_broadcast, audit),
        )

        store_outcome(audit, outcome)
        result = {
            "audit_id": audit.id,
            "trade_id": audit.trade_id,
            "risk_score": audit.risk_score,
            "verdict": audit.verdict,
            "tx_hash": audit.tx_hash,
        }
        job.status = "done"
        job.result = result
        job.updated_at = datetime.utcnow()
        db.session.commit()
        return {"ok": True, **result}

    except Exception as e:
        db.session.rollback()
        if audit is not None:
            mark_failed(audit, e)
        job.status = "error"
        job.result = {"error": str(e), "kind": e.__class__.__name__}
        job.updated_at = datetime.utcnow()
        db.session.commit()
        raise
