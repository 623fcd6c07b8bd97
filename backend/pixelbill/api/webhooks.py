"""Webhook API routes (Stripe billing events, Clerk user events)"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from pixelbill.db.session import get_db
from pixelbill.services.billing_gateway import get_billing_gateway
from pixelbill.services.webhook_service import process_identity_webhook, process_stripe_webhook

router = APIRouter(prefix="/api/webhook", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway=Depends(get_billing_gateway)
):
    """Handle Stripe webhook events

    The body is read as raw bytes; signature verification needs it untouched.
    """
    payload = await request.body()
    # Verification, the store and the Stripe fetch on checkout all block
    result = await run_in_threadpool(
        process_stripe_webhook, payload, request.headers.get("stripe-signature"), gateway, db
    )
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.post("/clerk")
async def clerk_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Clerk user lifecycle events (Svix-signed)"""
    payload = await request.body()
    result = await run_in_threadpool(process_identity_webhook, payload, request.headers, db)
    return JSONResponse(status_code=result.status_code, content=result.body)
