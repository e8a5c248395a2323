# aegis/models/types.py
from sqlalchemy import JSON
from sqlalchemy.types import TypeDecorator


class JSONBCompat(TypeDecorator):
    """
    JSONB nativo en PostgreSQL; JSON genérico en el resto (sqlite en tests).
    Guarda checks / model scores del veredicto sin cambiar los modelos por motor.
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import JSONB
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())
