# Chat Routers Module
# Exports all modular API routers for the chat platform

from routers.conversations import router as conversations_router
from routers.requests import router as requests_router
from routers.payments import router as payments_router
from routers.wallet import router as wallet_router
from routers.notifications import router as notifications_router
from routers.admin_settings import router as admin_settings_router
from routers.realtime import router as realtime_router

__all__ = [
    'conversations_router',
    'requests_router',
    'payments_router',
    'wallet_router',
    'notifications_router',
    'admin_settings_router',
    'realtime_router',
]
