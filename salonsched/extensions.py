"""Shared Flask extensions for the scheduling engine."""
from __future__ import annotations

from flask_sqlalchemy import SQLAlchemy

# SQLAlchemy database instance shared by the models and stores.
db = SQLAlchemy()

# Key under which the composed SchedulingEngine lives in ``app.extensions``.
ENGINE_KEY = "salonsched.engine"
