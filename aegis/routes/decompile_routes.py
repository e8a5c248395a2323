# aegis/routes/decompile_routes.py
from flask import Blueprint, current_app, jsonify, request

from aegis.config import AuditSettings
from aegis.errors import AuditError
from aegis.routes.audit_routes import error_response
from aegis.services.pipeline import build_collaborators
from aegis.services.source_resolver import resolve_source

bp = Blueprint("decompile", __name__)


@bp.get("")
def decompile():
    """
    Fuente del contrato (verificada en BaseScan o decompilada)
    Devuelve la fuente que vería el auditor. Si no hay fuente verificada se
    decompila el bytecode (polling hasta ~30s) y la salida se trunca a 15000
    caracteres.
    ---
    tags:
      - Source
    parameters:
      - in: query
        name: address
        required: true
        type: string
        example: "0x4ed4E862860beD51a9570b96d89aF5E1B0Efefed"
    responses:
      200:
        description: "OK: {source, contractName, provider, isDecompiled}"
      400:
        description: Dirección inválida
      503:
        description: RPC / colaboradores no disponibles
    """
    address = (request.args.get("address") or "").strip()
    if not address:
        return jsonify({"ok": False, "error": "Falta 'address'"}), 400

    settings = AuditSettings.from_mapping(current_app.config)
    try:
        collaborators = build_collaborators(settings, log_sink=current_app.logger.info)
    except Exception as e:
        return jsonify({"ok": False, "error": str(e)}), 503

    try:
        result = resolve_source(
            address,
            verified=collaborators.verified,
            bytecode=collaborators.bytecode,
            decompiler=collaborators.decompiler,
            log_sink=current_app.logger.info,
        )
    except AuditError as e:
        return error_response(e)

    return jsonify({"ok": True, "address": address, **result.to_dict()}), 200
