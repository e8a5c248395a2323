# aegis/routes/health.py
from flask import Blueprint, jsonify

from aegis.services.streamer import STREAM_PROTOCOL_VERSION

bp = Blueprint("health", __name__)

@bp.get("/healthz")
def healthz():
    """
    Healthcheck (no toca RPC ni DB)
    ---
    tags:
      - Health
    responses:
      200:
        description: OK
    """
    return jsonify({"ok": True, "service": "aegis", "stream_version": STREAM_PROTOCOL_VERSION}), 200
