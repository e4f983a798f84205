__version__ = "1.0.0"

from flask import Flask
from flasgger import Swagger
from flask_cors import CORS
from prometheus_flask_exporter import PrometheusMetrics

from .config import DevelopmentConfig, ProductionConfig, TestingConfig
from .logging_setup import setup_logging
from .routes import deep_scan_routes, health, monitor_routes

CONFIGS = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

API_PREFIX = "/api/monitor"

SWAGGER_TEMPLATE = {
    "swagger": "2.0",
    "info": {
        "title": "Trust Monitor API",
        "description": "Continuous marketplace audit: health, on-chain reconciliation, risk scoring and deep scans.",
        "version": __version__,
    },
    "basePath": "/",
    "schemes": ["https"],
    "securityDefinitions": {
        "AdminKey": {"type": "apiKey", "in": "header", "name": "X-Admin-Key"},
    },
}


def _cors(app) -> None:
    # CORS_ORIGINS: '*' or empty -> any origin; comma-separated list -> only those
    raw = (app.config.get("CORS_ORIGINS") or "*").strip()
    origins = "*" if raw in ("", "*") else [o.strip() for o in raw.split(",") if o.strip()]
    CORS(
        app,
        resources={r"/*": {"origins": origins}},
        supports_credentials=False,
        methods=["GET", "POST", "PATCH", "OPTIONS", "HEAD"],
        allow_headers=["Content-Type", "Accept", "Origin", "X-Admin-Key", "X-Payment-Tx", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )


def _swagger(app) -> None:
    Swagger(app, template=SWAGGER_TEMPLATE, config={
        "headers": [],
        "specs": [{
            "endpoint": "trust_monitor_spec",
            "route": "/apispec_1.json",
            "rule_filter": lambda rule: rule.rule.startswith(API_PREFIX) or rule.rule == "/healthz",
            "model_filter": lambda tag: True,
        }],
        "static_url_path": "/flasgger_static",
        "swagger_ui": True,
        "specs_route": "/apidocs/",
    })


def create_app(config_name: str = "development"):
    app = Flask(__name__)
    app.config.from_object(CONFIGS.get((config_name or "").lower(), DevelopmentConfig))

    setup_logging(app)
    _cors(app)

    from .models import init_app as init_models
    init_models(app)

    _swagger(app)

    app.register_blueprint(health.bp)
    app.register_blueprint(monitor_routes.bp, url_prefix=API_PREFIX)
    app.register_blueprint(deep_scan_routes.bp, url_prefix=API_PREFIX)

    metrics = PrometheusMetrics(app, path="/metrics")
    metrics.info("app_info", "Marketplace trust monitor", version=__version__)

    # The agent goes last: it needs config, models and metrics in place
    from .services.monitor_agent import init_app as init_monitor
    init_monitor(app)

    return app
