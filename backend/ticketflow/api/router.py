"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from ticketflow.api.routes import auth, orders, payments, webhooks

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(auth.router)
api_router.include_router(orders.router)
api_router.include_router(payments.router)
api_router.include_router(webhooks.router)
