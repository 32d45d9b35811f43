"""API routes."""

from fieldsync.api.auth import router as auth_router
from fieldsync.api.device_tokens import router as device_tokens_router
from fieldsync.api.schools import router as schools_router
from fieldsync.api.sync import router as sync_router
from fieldsync.api.surveys import router as surveys_router

__all__ = [
    "auth_router",
    "device_tokens_router",
    "schools_router",
    "sync_router",
    "surveys_router",
]
