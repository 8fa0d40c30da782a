"""
FastAPI dependencies resolving the collaborators wired by create_app().
"""

from fastapi import Request

from chatrelay.config import Settings
from chatrelay.routing import MessageRouter
from chatrelay.storage import ConversationStore


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_message_router(request: Request) -> MessageRouter:
    return request.app.state.message_router


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
