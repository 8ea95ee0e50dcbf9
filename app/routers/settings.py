from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import ValidationError

from app.config import PipelineSettings
from app.dependencies import get_settings_store
from app.services.settings_store import SettingsStore

router = APIRouter(prefix="/api/settings", tags=["Settings"])


@router.get("", response_model=PipelineSettings)
def read_settings(store: SettingsStore = Depends(get_settings_store)):
    return store.load()


@router.put("", response_model=PipelineSettings)
def update_settings(
    changes: Dict[str, Any] = Body(...),
    store: SettingsStore = Depends(get_settings_store),
):
    """Change one or more pipeline thresholds. Out-of-range values are rejected and nothing is stored."""
    try:
        return store.update(changes)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
