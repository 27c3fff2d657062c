import os
import logging

from fastapi import APIRouter, HTTPException, Request, status, Depends

from deyncare_billing.bootstrap import Services
from deyncare_billing.payment_gateway import StripePaymentGateway
from deyncare_billing.payment_event_processor import process_event
from deyncare_billing.routers.deps import get_services

router = APIRouter()


@router.post("/webhook", status_code=200)
async def process_webhook(request: Request, services: Services = Depends(get_services)):
    payload_bytes = await request.body()
    payload = payload_bytes.decode('utf-8')
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe-Signature header")
    endpoint_secret = os.getenv("STRIPE_ENDPOINT_SECRET") or services.settings.stripe_endpoint_secret
    if not endpoint_secret:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Stripe endpoint secret not configured")
    stripe_gateway = StripePaymentGateway()
    try:
        event = stripe_gateway.process_webhook_event(payload, sig_header, endpoint_secret)
    except Exception as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        metadata = process_event(event, services.reconciler)
    except Exception as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Error processing webhook event")

    return {"success": True, "event": {"id": event.get("id"), "type": event.get("type")}, "metadata": metadata}
