# trust_monitor/models/__init__.py
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()

def init_app(app):
    app.config.setdefault("SQLALCHEMY_TRACK_MODIFICATIONS", False)
    db.init_app(app)
    migrate.init_app(app, db)

# Imported so the models register with the metadata
from .audit_log import AuditLog        # noqa
from .audit_alert import AuditAlert    # noqa
from .risk_score import RiskScore      # noqa
from .order import Order               # noqa
from .consumed_payment import ConsumedPayment  # noqa

__all__ = ["db", "migrate", "AuditLog", "AuditAlert", "RiskScore", "Order", "ConsumedPayment"]
