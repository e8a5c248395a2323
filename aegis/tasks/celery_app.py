import os
import logging
from celery import Celery

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

def make_celery() -> Celery:
    """
    Instancia base de Celery (broker/backend Redis, serialización JSON).
    Incluye verificación de conexión y logs de diagnóstico.
    """
    celery_app = Celery("aegis_token_auditor")

    broker_url = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
    result_backend = os.getenv("CELERY_RESULT_BACKEND", broker_url)

    celery_app.conf.update(
        broker_url=broker_url,
        result_backend=result_backend,
        task_ignore_result=False,
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone=os.getenv("TZ", "UTC"),
        enable_utc=True,
        # un audit por worker a la vez: los detectores ya corren en paralelo dentro
        worker_prefetch_multiplier=1,
        task_acks_late=True,
    )

    try:
        conn = celery_app.connection()
        conn.ensure_connection(max_retries=1)
        logger.info("Celery conectado a broker: %s", broker_url)
    except Exception as e:
        logger.error("Error conectando a Celery broker (%s): %s", broker_url, e)

    return celery_app

celery = make_celery()

def _init_celery_with_flask():
    """Inicializa Celery dentro del contexto Flask."""
    from aegis import create_app
    config_name = os.getenv("FLASK_ENV", "development")
    flask_app = create_app(config_name)

    broker = flask_app.config.get("CELERY_BROKER_URL")
    backend = flask_app.config.get("CELERY_RESULT_BACKEND") or broker
    if broker:
        celery.conf.broker_url = broker
    if backend:
        celery.conf.result_backend = backend

    TaskBase = celery.Task

    class ContextTask(TaskBase):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return TaskBase.__call__(self, *args, **kwargs)

    celery.Task = ContextTask
    celery.set_default()

    with flask_app.app_context():
        from aegis.tasks import audit_tasks, clearance_tasks  # noqa: F401

    return flask_app

_flask_app = _init_celery_with_flask()
