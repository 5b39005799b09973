"""Application factory for the SalonHub appointment scheduling engine."""
from __future__ import annotations

import logging
from collections.abc import Mapping

from flask import Flask

from .cli import register_commands
from .config import Config
from .engine import SchedulingEngine, get_engine
from .extensions import ENGINE_KEY, db

__all__ = ["create_app", "get_engine", "SchedulingEngine"]


def _configure_logging(app: Flask) -> None:
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    logging.getLogger(__name__).setLevel(level)
    app.logger.setLevel(level)


def create_app(config_object=None, clock=None, sender=None):
    """Create and configure the Flask application.

    ``config_object`` may be a mapping of overrides or a config class; without
    one, the file named by ``APP_SETTINGS`` is loaded when present.
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)

    if config_object is None:
        app.config.from_envvar("APP_SETTINGS", silent=True)
    elif isinstance(config_object, Mapping):
        app.config.update(config_object)
    else:
        app.config.from_object(config_object)

    _configure_logging(app)
    db.init_app(app)
    app.extensions[ENGINE_KEY] = SchedulingEngine(app.config, clock=clock, sender=sender)
    register_commands(app)

    return app
