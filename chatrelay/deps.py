from fastapi import Request

from .orchestrator import Orchestrator
from .relay.engine import RelayEngine
from .relay.upstream import OpenRouterClient
from .session.store import SessionStore
from .settings import Settings


# Components are built once in the application lifespan and stored on
# app.state; these dependencies hand them to route handlers.


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def get_engine(request: Request) -> RelayEngine:
    return request.app.state.engine


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_upstream(request: Request) -> OpenRouterClient:
    return request.app.state.upstream


__all__ = [
    "get_engine",
    "get_orchestrator",
    "get_settings",
    "get_store",
    "get_upstream",
]
