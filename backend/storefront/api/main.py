"""
API router aggregation.

Every area router is mounted here; main.py mounts this router under
API_V1_STR.

- webhooks: inbound payment provider events
- checkout: checkout session creation
- licenses: activate / validate / deactivate
- admin: operator view of jobs and events
- utils: health check
"""
from fastapi import APIRouter

from storefront.api.routes import admin, checkout, licenses, payments_webhook, utils

api_router = APIRouter()

api_router.include_router(payments_webhook.router)  # /webhooks/*
api_router.include_router(checkout.router)  # /checkout/*
api_router.include_router(licenses.router)  # /licenses/*
api_router.include_router(admin.router)  # /admin/*
api_router.include_router(utils.router)  # /utils/*
