import logging

from fastapi import FastAPI

from entitlements.api import receipts, webhooks

# Configure logging
logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)


description = """
Entitlement reconciliation for in-app purchases: validates purchase receipts,
applies Apple App Store Server Notifications to subscription state, and grants
tokens and premium status exactly once per renewal.
"""

tags_metadata = [
    {"name": "iap", "description": "Receipt validation and subscription status"},
    {"name": "iap-webhook", "description": "Apple App Store Server Notifications"},
]

app = FastAPI(
    title="Entitlements API",
    description=description,
    version="1.0.0",
    openapi_tags=tags_metadata,
)

# Include routers
app.include_router(receipts.router)
app.include_router(webhooks.webhook_router)


@app.get("/")
def root():
    return {"message": "Entitlements API is running", "version": "1.0.0"}


@app.get("/health")
def health():
    return {"ok": True}
