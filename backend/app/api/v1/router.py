"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import (
    payments, subscriptions, webhooks,
    reports, purchases, clients
)

router = APIRouter()

# Payment lifecycle
router.include_router(payments.router)
router.include_router(subscriptions.router)

# Stripe callbacks (signature-verified, no bearer token)
router.include_router(webhooks.router)

# Read views
router.include_router(reports.router)
router.include_router(purchases.router)
router.include_router(clients.router)
