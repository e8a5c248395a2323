from flask import Flask
from flasgger import Swagger
from prometheus_flask_exporter import PrometheusMetrics
from flask_cors import CORS
import os

from .logging_setup import setup_logging
from .routes import health, audit_routes, decompile_routes, clearance_routes
from .config import DevelopmentConfig, ProductionConfig, TestingConfig


def create_app(config_name: str = "development"):
    app = Flask(__name__)

    config_map = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig,
    }
    app.config.from_object(config_map.get(config_name.lower(), DevelopmentConfig))

    setup_logging(app)

    # 👇 CORS desde CORS_ORIGINS ('*' o lista separada por comas).
    # Cache-Control / Last-Event-ID los manda el EventSource del dashboard.
    cors_origin = os.getenv("CORS_ORIGINS", "*").strip()
    cors_common_kwargs = dict(
        supports_credentials=False,
        methods=["GET", "POST", "OPTIONS", "HEAD"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "Accept",
            "Cache-Control",
            "Last-Event-ID",
            "X-Request-ID",
        ],
        expose_headers=["X-Aegis-Stream-Version"],
    )
    if cors_origin in ("*", ""):
        origins = "*"
    else:
        origins = [o.strip() for o in cors_origin.split(",") if o.strip()]
    CORS(app, resources={r"/*": {"origins": origins}}, **cors_common_kwargs)

    # 👇 Modelos (AnalysisJob, TokenAudit)
    from .models import init_app as init_models
    init_models(app)

    # Swagger
    swagger_template = {
        "swagger": "2.0",
        "info": {
            "title": "Aegis Token Risk Auditor",
            "description": "Auditoría de riesgo de tokens: fuente, detectores, veredicto on-chain y clearance.",
            "version": "1.0.0",
        },
        "basePath": "/",
        "schemes": ["https"],
    }
    swagger_config = {
        "headers": [],
        "specs": [
            {
                "endpoint": "apispec_1",
                "route": "/apispec_1.json",
                "rule_filter": lambda rule: True,
                "model_filter": lambda tag: True,
            }
        ],
        "static_url_path": "/flasgger_static",
        "swagger_ui": True,
        "specs_route": "/apidocs/",
    }
    Swagger(app, template=swagger_template, config=swagger_config)

    # Blueprints
    app.register_blueprint(health.bp)
    app.register_blueprint(audit_routes.bp, url_prefix="/api/audit")
    app.register_blueprint(decompile_routes.bp, url_prefix="/api/decompile")
    app.register_blueprint(clearance_routes.bp, url_prefix="/api/clearance")

    # Métricas
    metrics = PrometheusMetrics(app, path="/metrics")
    metrics.info("app_info", "Aegis token risk auditor", version="1.0.0")

    return app
