# backend/edition_ledger/__init__.py
from flask import Flask, g

from .config import Config
from .extensions import db, migrate



def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Background certificate handoff
    from .services import certificate_service
    certificate_service.init_app(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.editions import editions_bp
    from .routes.provenance import provenance_bp
    from .routes.nfc import nfc_bp
    from .routes.certificates import certificates_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(editions_bp)
    app.register_blueprint(provenance_bp)
    app.register_blueprint(nfc_bp)
    app.register_blueprint(certificates_bp)

    # g lives on the app context, which tests and embedded callers share across requests
    @app.teardown_request
    def _clear_request_state(exc=None):
        g.pop("actor", None)
        g.pop("payload", None)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
