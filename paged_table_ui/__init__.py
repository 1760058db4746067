"""Paged table UI application factory."""

from __future__ import annotations

import atexit

from flask import Flask

from .config import load_environment
from .logging import configure_logging
from .routes import exports, tables
from .services.runtime import TableRuntime


def create_app() -> Flask:
    """Create and configure the Flask application."""
    load_environment()
    configure_logging()

    app = Flask(__name__)

    runtime = TableRuntime()
    app.extensions["paged_table_ui"] = runtime
    atexit.register(runtime.shutdown)

    app.register_blueprint(tables.bp)
    app.register_blueprint(exports.bp)

    return app
