# trust_monitor/models/types.py
import json

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


class JSONBCompat(TypeDecorator):
    """
    Free-form JSON column: JSONB on PostgreSQL, JSON on SQLite (tests) and the rest.

    Values are normalised on the way in, so audit metadata can carry datetimes,
    Decimals or uint256 amounts straight from decoded chain events.
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB(none_as_null=True))
        return dialect.type_descriptor(JSON(none_as_null=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return json.loads(json.dumps(value, default=str))
