# aegis/routes/clearance_routes.py
from flask import Blueprint, jsonify, request

from aegis.models import db, AnalysisJob
from aegis.routes.audit_routes import error_response
from aegis.errors import AuditError
from aegis.services.source_resolver import norm_address

bp = Blueprint("clearance", __name__)


@bp.post("/wait")
def wait():
    """
    Clearance: esperar ClearanceUpdated / ClearanceDenied de un token
    ---
    tags:
      - Clearance
    consumes:
      - application/json
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - token
          properties:
            token:
              type: string
              example: "0x4ed4E862860beD51a9570b96d89aF5E1B0Efefed"
            start_block:
              type: integer
              description: Bloque desde el que buscar logs del módulo.
              example: 0
            max_attempts:
              type: integer
              description: Intentos (1 por segundo). Default CLEARANCE_MAX_ATTEMPTS.
              example: 120
    responses:
      202:
        description: Aceptado (job encolado)
      400:
        description: Token inválido
      501:
        description: Task no disponible
    """
    data = request.get_json(silent=True) or {}
    try:
        token = norm_address((data.get("token") or "").strip())
        start_block = int(data.get("start_block") or 0)
        max_attempts = data.get("max_attempts")
        max_attempts = int(max_attempts) if max_attempts is not None else None
    except AuditError as e:
        return error_response(e)
    except (TypeError, ValueError):
        return jsonify({"ok": False, "error": "'start_block' y 'max_attempts' deben ser enteros"}), 400

    if max_attempts is not None and max_attempts < 1:
        return jsonify({"ok": False, "error": "'max_attempts' debe ser >= 1"}), 400

    try:
        from aegis.tasks.clearance_tasks import wait_for_clearance
    except Exception:
        return jsonify({"ok": False, "error": "Task 'clearance.wait' no disponible"}), 501

    job = AnalysisJob(
        kind="clearance",
        status="queued",
        params={"token": token, "start_block": start_block, "max_attempts": max_attempts},
    )
    db.session.add(job)
    db.session.commit()

    async_res = wait_for_clearance.delay(job.id, token, start_block, max_attempts)
    job.task_id = async_res.id
    db.session.commit()

    return jsonify({"ok": True, "job_id": job.id, "task_id": async_res.id, "status": "queued"}), 202


@bp.get("/status/<int:job_id>")
def status(job_id: int):
    """
    Clearance: estado del job (outcome = pending|approved|denied|timeout)
    ---
    tags:
      - Clearance
    parameters:
      - in: path
        name: job_id
        required: true
        type: integer
    responses:
      200: {description: OK}
      404: {description: No encontrado}
    """
    job = db.session.get(AnalysisJob, job_id)
    if not job or job.kind != "clearance":
        return jsonify({"ok": False, "error": "job no encontrado"}), 404

    result = job.result or {}
    return jsonify({
        "ok": True,
        "job_id": job.id,
        "status": job.status,
        "outcome": result.get("outcome", "pending"),
        "result": job.result,
    }), 200
