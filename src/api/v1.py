"""Centralized v1 API router — all module routers are included here."""

from fastapi import APIRouter

from src.modules.conversation.router import message_router
from src.modules.conversation.router import router as conversation_router
from src.modules.realtime.router import router as realtime_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(conversation_router)
v1_router.include_router(message_router)
v1_router.include_router(realtime_router)
