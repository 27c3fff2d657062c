import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from deyncare_billing.aggregate import Subscription, to_document
from deyncare_billing.billing_calculator import (
    compute_display_status,
    days_remaining,
    duration_days,
    effective_price,
    percentage_used,
)
from deyncare_billing.bootstrap import Services
from deyncare_billing.errors import BillingError
from deyncare_billing.payment_reconciler import normalize_evidence
from deyncare_billing.routers.deps import get_services

router = APIRouter()


class CreateSubscriptionRequest(BaseModel):
    shop_id: str
    plan_type: str = "trial"
    payment_method: Optional[str] = None
    auto_renew: Optional[bool] = None
    notes: Optional[str] = None
    performed_by: str = "system"


class UpgradeRequest(BaseModel):
    plan_type: str
    payment_method: Optional[str] = None
    performed_by: str = "system"


class ChangePlanRequest(BaseModel):
    plan_type: str
    prorated: bool = True
    performed_by: str = "system"


class ExtendRequest(BaseModel):
    days: int
    reason: Optional[str] = None
    performed_by: str = "system"


class CancelRequest(BaseModel):
    reason: Optional[str] = None
    feedback: Optional[str] = None
    immediate_effect: bool = False
    performed_by: str = "system"


class PaymentRequest(BaseModel):
    transaction_id: str
    method: str
    amount: Decimal = Field(ge=0)
    receipt_url: Optional[str] = None
    plan_type: Optional[str] = None
    performed_by: str = "system"


class PaymentFailureRequest(BaseModel):
    reason: Optional[str] = None
    performed_by: str = "system"


class ChargeRequestBody(BaseModel):
    payer_phone: Optional[str] = None
    payer_account: Optional[str] = None
    reference: Optional[str] = None
    performed_by: str = "system"


def subscription_view(subscription: Subscription, now) -> Dict[str, Any]:
    view = to_document(subscription)
    view["version"] = subscription.version
    view["displayStatus"] = compute_display_status(subscription, now).value
    view["totalPrice"] = str(effective_price(subscription.pricing, now))
    view["durationDays"] = duration_days(subscription)
    view["daysRemaining"] = days_remaining(subscription.dates.end_date, now)
    view["percentageUsed"] = percentage_used(subscription, now)
    return view


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, BillingError):
        logging.info(f"Billing request rejected: {e.code}: {e}")
        return HTTPException(status_code=e.status_code, detail=jsonable_encoder(e.to_dict()))
    logging.error(e, exc_info=True)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


def _respond(services: Services, subscription: Subscription, **extra) -> Dict[str, Any]:
    body = {"success": True, "subscription": subscription_view(subscription, services.state_machine.now())}
    body.update(extra)
    return body


@router.post("", status_code=201)
def create_subscription(body: CreateSubscriptionRequest, services: Services = Depends(get_services)):
    try:
        subscription = services.state_machine.create(
            body.shop_id,
            body.plan_type,
            payment_method=body.payment_method,
            auto_renew=body.auto_renew,
            notes=body.notes,
            performed_by=body.performed_by,
        )
        return _respond(services, subscription)
    except Exception as e:
        raise _http_error(e)


@router.get("/shop/{shop_id}", status_code=200)
def list_shop_subscriptions(shop_id: str, services: Services = Depends(get_services)):
    try:
        now = services.state_machine.now()
        subscriptions = services.store.find_by_shop(shop_id)
        return {"success": True, "subscriptions": [subscription_view(s, now) for s in subscriptions]}
    except Exception as e:
        raise _http_error(e)


@router.get("/{subscription_id}", status_code=200)
def get_subscription(subscription_id: str, services: Services = Depends(get_services)):
    try:
        return _respond(services, services.state_machine.get(subscription_id))
    except Exception as e:
        raise _http_error(e)


@router.post("/{subscription_id}/upgrade", status_code=200)
def upgrade_from_trial(subscription_id: str, body: UpgradeRequest, services: Services = Depends(get_services)):
    try:
        subscription = services.state_machine.convert_trial_to_paid(
            subscription_id, body.plan_type, body.payment_method, body.performed_by
        )
        return _respond(services, subscription)
    except Exception as e:
        raise _http_error(e)


@router.post("/{subscription_id}/change-plan", status_code=200)
def change_plan(subscription_id: str, body: ChangePlanRequest, services: Services = Depends(get_services)):
    try:
        subscription = services.state_machine.change_plan(
            subscription_id, body.plan_type, body.prorated, body.performed_by
        )
        return _respond(services, subscription)
    except Exception as e:
        raise _http_error(e)


@router.post("/{subscription_id}/extend", status_code=200)
def extend_subscription(subscription_id: str, body: ExtendRequest, services: Services = Depends(get_services)):
    try:
        subscription = services.state_machine.extend(subscription_id, body.days, body.reason, body.performed_by)
        return _respond(services, subscription)
    except Exception as e:
        raise _http_error(e)


@router.post("/{subscription_id}/cancel", status_code=200)
def cancel_subscription(subscription_id: str, body: CancelRequest, services: Services = Depends(get_services)):
    try:
        subscription = services.state_machine.cancel(
            subscription_id,
            reason=body.reason,
            feedback=body.feedback,
            immediate=body.immediate_effect,
            performed_by=body.performed_by,
        )
        return _respond(services, subscription)
    except Exception as e:
        raise _http_error(e)


@router.post("/{subscription_id}/payments", status_code=200)
def record_payment(subscription_id: str, body: PaymentRequest, services: Services = Depends(get_services)):
    try:
        evidence = normalize_evidence(
            body.transaction_id, body.method, body.amount, body.receipt_url, body.plan_type
        )
        outcome = services.reconciler.record_payment(subscription_id, evidence, body.performed_by)
        return _respond(services, outcome.subscription, applied=outcome.applied, transactionId=outcome.transaction_id)
    except Exception as e:
        raise _http_error(e)


@router.post("/{subscription_id}/payment-failures", status_code=200)
def record_payment_failure(subscription_id: str, body: PaymentFailureRequest, services: Services = Depends(get_services)):
    try:
        subscription = services.reconciler.record_failure(subscription_id, body.reason, body.performed_by)
        return _respond(services, subscription)
    except Exception as e:
        raise _http_error(e)


@router.post("/{subscription_id}/charge", status_code=200)
def charge_subscription(subscription_id: str, body: ChargeRequestBody, services: Services = Depends(get_services)):
    try:
        outcome = services.reconciler.charge(
            subscription_id,
            payer_phone=body.payer_phone,
            payer_account=body.payer_account,
            reference=body.reference,
            performed_by=body.performed_by,
        )
        return _respond(
            services,
            outcome.subscription,
            success=outcome.result.success,
            applied=outcome.applied,
            gateway={
                "transactionId": outcome.result.transaction_id,
                "responseCode": outcome.result.response_code,
                "responseMessage": outcome.result.response_message,
            },
        )
    except Exception as e:
        raise _http_error(e)
