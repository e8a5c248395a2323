# aegis/routes/audit_routes.py
import logging
import threading
from functools import partial

from flask import Blueprint, Response, current_app, jsonify, request

from aegis.config import AuditSettings
from aegis.errors import AuditError, InputError
from aegis.models import db, AnalysisJob
from aegis.models.audit import TokenAudit
from aegis.services.audit_store import get_or_create_audit, mark_broadcast, mark_failed, store_outcome
from aegis.services.pipeline import AuditRequest, build_collaborators, run_audit_pipeline
from aegis.services.streamer import STREAM_PROTOCOL_VERSION, AuditStreamer

logger = logging.getLogger(__name__)

bp = Blueprint("audit", __name__)  # el prefijo se aplica al registrar en aegis/__init__.py

# --- Helpers locales ---

def _iso(dt):
    return dt.replace(microsecond=0).isoformat() + "Z" if dt else None


def error_response(e: Exception, default_status: int = 500):
    """AuditError -> su status HTTP; transporte (status 0) -> 502."""
    if isinstance(e, AuditError):
        status = e.status_code or 502
        if status < 400:
            status = 502
        return jsonify({"ok": False, "error": str(e), "kind": e.__class__.__name__}), status
    return jsonify({"ok": False, "error": str(e)}), default_status


def _parse_request(data) -> AuditRequest:
    trade_id = data.get("trade_id", data.get("tradeId"))
    token = (data.get("token") or data.get("target_token") or data.get("address") or "").strip()
    start_block = data.get("start_block", data.get("startBlock", 0)) or 0
    try:
        trade_id = int(str(trade_id), 0)
        start_block = int(start_block)
    except (TypeError, ValueError):
        raise InputError("'trade_id' y 'start_block' deben ser enteros")
    return AuditRequest(trade_id=trade_id, target_token=token, start_block=start_block)


def _already_committed(trade_id: int):
    audit = TokenAudit.query.filter_by(trade_id=str(trade_id)).first()
    return audit if audit and audit.committed else None


@bp.post("/start")
def start():
    """
    Auditoría: encolar audit de un trade
    ---
    tags:
      - Audit
    consumes:
      - application/json
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - trade_id
            - token
          properties:
            trade_id:
              type: string
              description: tradeId (uint256) emitido por requestAudit().
              example: "42"
            token:
              type: string
              description: Token a auditar.
              example: "0x4ed4E862860beD51a9570b96d89aF5E1B0Efefed"
            start_block:
              type: integer
              description: Bloque del requestAudit().
              example: 0
    responses:
      202:
        description: Aceptado (job encolado)
      400:
        description: Faltan campos / inválidos
      409:
        description: El trade ya tiene veredicto comiteado
      501:
        description: Task no disponible
    """
    data = request.get_json(silent=True) or {}
    if data.get("trade_id", data.get("tradeId")) is None or not (data.get("token") or data.get("address")):
        return jsonify({"ok": False, "error": "Faltan 'trade_id' o 'token'"}), 400

    try:
        req = _parse_request(data)
    except AuditError as e:
        return error_response(e)

    if _already_committed(req.trade_id):
        return jsonify({"ok": False, "error": f"trade {req.trade_id} ya comiteado"}), 409

    # Import diferido de la task
    try:
        from aegis.tasks.audit_tasks import run_audit
    except Exception:
        return jsonify({"ok": False, "error": "Task 'audit.run' no disponible"}), 501

    params = {"trade_id": str(req.trade_id), "token": req.target_token, "start_block": req.start_block}
    job = AnalysisJob(kind="audit", status="queued", params=params)
    db.session.add(job)
    db.session.commit()

    async_res = run_audit.delay(job.id, str(req.trade_id), req.target_token, req.start_block)
    job.task_id = async_res.id
    db.session.commit()

    return jsonify({"ok": True, "job_id": job.id, "task_id": async_res.id, "status": "queued"}), 202


@bp.get("/status/<int:job_id>")
def status(job_id: int):
    """
    Auditoría: estado de AnalysisJob
    ---
    tags:
      - Audit
    parameters:
      - in: path
        name: job_id
        required: true
        type: integer
        example: 1
    responses:
      200:
        description: OK
      404:
        description: No encontrado
    """
    job = db.session.get(AnalysisJob, job_id)
    if not job:
        return jsonify({"ok": False, "error": "job no encontrado"}), 404

    return jsonify({
        "ok": True,
        "job_id": job.id,
        "status": job.status,
        "task_id": job.task_id,
        "result": job.result,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
    }), 200


@bp.get("/<trade_id>")
def get_audit(trade_id: str):
    """
    Auditoría: veredicto de un trade
    ---
    tags:
      - Audit
    parameters:
      - in: path
        name: trade_id
        required: true
        type: string
        example: "42"
    responses:
      200:
        description: OK
      404:
        description: No encontrada
    """
    audit = TokenAudit.query.filter_by(trade_id=trade_id).first()
    if not audit:
        return jsonify({"ok": False, "error": "audit no encontrada"}), 404
    return jsonify({"ok": True, "audit": audit.to_dict()}), 200


@bp.get("/")
def list_audits():
    """
    Auditoría: listar últimas 50 (filtrable por ?token=0x...)
    ---
    tags:
      - Audit
    parameters:
      - in: query
        name: token
        required: false
        type: string
        description: Filtra por token (case-insensitive).
    responses:
      200:
        description: OK
    """
    token = request.args.get("token")
    q = TokenAudit.query
    if token:
        q = q.filter(TokenAudit.target_token == token.lower())
    audits = q.order_by(TokenAudit.id.desc()).limit(50).all()

    return jsonify({
        "ok": True,
        "items": [
            {
                "trade_id": a.trade_id,
                "target_token": a.target_token,
                "status": a.status,
                "risk_score": a.risk_score,
                "verdict": a.verdict,
                "tx_hash": a.tx_hash,
                "started_at": _iso(a.started_at),
                "finished_at": _iso(a.finished_at),
            } for a in audits
        ]
    }), 200


@bp.get("/stream")
def stream():
    """
    Auditoría: feed de progreso en vivo (text/event-stream)
    Cada línea es `data: {json}` con `type` en phase | static-analysis |
    llm-reasoning-start | llm-reasoning-chunk | llm-score | detector-error |
    tx | tx-status | final_verdict | error.
    ---
    tags:
      - Audit
    produces:
      - text/event-stream
    parameters:
      - in: query
        name: token
        required: true
        type: string
      - in: query
        name: trade_id
        required: true
        type: string
      - in: query
        name: start_block
        required: false
        type: integer
    responses:
      200:
        description: Stream SSE
      400:
        description: Parámetros inválidos
      409:
        description: El trade ya tiene veredicto comiteado
      503:
        description: Colaboradores no disponibles (RPC, etc.)
    """
    try:
        req = _parse_request(request.args)
    except AuditError as e:
        return error_response(e)

    if _already_committed(req.trade_id):
        return jsonify({"ok": False, "error": f"trade {req.trade_id} ya comiteado"}), 409

    settings = AuditSettings.from_mapping(current_app.config)
    try:
        collaborators = build_collaborators(settings)
    except Exception as e:
        return jsonify({"ok": False, "error": str(e)}), 503

    # mismo registro TokenAudit que audit.run: un trade comiteado por stream no se reaudita
    try:
        audit_id = get_or_create_audit(req.trade_id, req.target_token, req.start_block).id
    except AuditError as e:
        return error_response(e)

    streamer = AuditStreamer()
    app = current_app._get_current_object()

    def _worker():
        with app.app_context():
            audit = db.session.get(TokenAudit, audit_id)
            try:
                outcome = run_audit_pipeline(
                    req, settings, collaborators, streamer,
                    on_broadcast=partial(mark_broadcast, audit),
                )
                store_outcome(audit, outcome)
                db.session.commit()
            except Exception as e:
                # ya reportado como evento 'error' en el stream
                logger.info("Stream audit trade=%s terminó con error: %s", req.trade_id, e)
                db.session.rollback()
                mark_failed(audit, e)
                db.session.commit()
            finally:
                streamer.close()

    threading.Thread(target=_worker, name=f"audit-{req.trade_id}", daemon=True).start()

    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
        "X-Aegis-Stream-Version": str(STREAM_PROTOCOL_VERSION),
    }
    return Response(streamer.sse(), mimetype="text/event-stream", headers=headers)
