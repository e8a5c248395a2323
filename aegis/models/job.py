# aegis/models/job.py
from datetime import datetime
from aegis.models import db

class AnalysisJob(db.Model):
    """Bookkeeping de tareas Celery (audit.run / clearance.wait)."""
    __tablename__ = "analysis_jobs"

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(20), nullable=False, default="audit")   # audit|clearance
    task_id = db.Column(db.String(50), index=True, unique=True, nullable=True)
    status = db.Column(db.String(20), default="queued", index=True)   # queued|running|done|error
    params = db.Column(db.JSON, nullable=True)
    result = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
