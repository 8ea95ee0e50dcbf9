"""FastAPI dependencies for the long-lived pipeline services.

``main.py`` builds one WorkflowEngine (and the poller around it) in the
lifespan handler and parks them on ``app.state``.
"""
from fastapi import Request

from app.agents.orchestrator import WorkflowEngine
from app.services.settings_store import SettingsStore


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.engine


def get_settings_store(request: Request) -> SettingsStore:
    return request.app.state.engine.settings_store
