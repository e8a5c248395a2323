# aegis/tasks/clearance_tasks.py
from datetime import datetime

from celery import shared_task
from flask import current_app

from aegis.config import AuditSettings
from aegis.models import db, AnalysisJob
from aegis.services.clearance_poller import Web3ClearanceLogSource, poll_for_clearance
from aegis.services.web3_client import get_w3


@shared_task(name="clearance.wait")
def wait_for_clearance(job_id: int, token: str, start_block: int, max_attempts: int = None):
    """
    Espera (lado agente) el ClearanceUpdated / ClearanceDenied del módulo para
    el token y deja el resultado en el AnalysisJob.
    """
    job = db.session.get(AnalysisJob, job_id)
    if not job:
        return {"error": f"AnalysisJob id {job_id} not found"}

    job.status = "running"
    db.session.commit()

    try:
        settings = AuditSettings.from_mapping(current_app.config)
        w3 = get_w3(settings.web3_provider_uri, settings.web3_use_poa)
        logs = Web3ClearanceLogSource(w3, settings.module_address)

        res = poll_for_clearance(
            logs,
            token,
            int(start_block),
            max_attempts=int(max_attempts or settings.clearance_max_attempts),
        )
        job.status = "done"
        job.result = res.to_dict()
        job.updated_at = datetime.utcnow()
        db.session.commit()
        return res.to_dict()

    except Exception as e:
        db.session.rollback()
        job.status = "error"
        job.result = {"error": str(e)}
        job.updated_at = datetime.utcnow()
        db.session.commit()
        raise
