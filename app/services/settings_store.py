"""Persisted overrides for ``PipelineSettings``.

Only the fields that differ from the defaults need to be stored; loading
merges the stored JSON over the defaults and validates the result, so a
row written by an older version with unknown keys still loads.
"""
import logging
from typing import Any, Callable, Dict

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config import PipelineSettings
from app.database import SessionLocal
from app.models.setting import AppSetting

logger = logging.getLogger(__name__)

PIPELINE_KEY = "pipeline"


class SettingsStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def load(self) -> PipelineSettings:
        db = self.session_factory()
        try:
            row = db.query(AppSetting).filter(AppSetting.key == PIPELINE_KEY).first()
            stored = dict(row.value) if row and row.value else {}
        finally:
            db.close()
        try:
            return PipelineSettings(**stored)
        except ValidationError as e:
            logger.error("Stored pipeline settings are invalid, using defaults: %s", e)
            return PipelineSettings()

    def update(self, changes: Dict[str, Any]) -> PipelineSettings:
        """Validate ``changes`` against the current settings and persist them.

        Raises pydantic.ValidationError (nothing stored) when a value is out
        of range.
        """
        merged = PipelineSettings(**{**self.load().model_dump(), **changes})

        db = self.session_factory()
        try:
            row = db.query(AppSetting).filter(AppSetting.key == PIPELINE_KEY).first()
            if row:
                row.value = merged.model_dump()
            else:
                db.add(AppSetting(key=PIPELINE_KEY, value=merged.model_dump()))
            db.commit()
        finally:
            db.close()

        logger.info("Pipeline settings updated: %s", sorted(changes))
        return merged
