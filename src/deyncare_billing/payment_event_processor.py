import logging
import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from deyncare_billing.aggregate import PaymentMethod
from deyncare_billing.errors import AlreadyCanceledError, NotFoundError, ValidationError
from deyncare_billing.payment_reconciler import PaymentReconciler
from deyncare_billing.state_machine import PaymentEvidence

PAYMENT_SUCCEEDED_EVENTS = {
    'invoice.payment_succeeded': 'amount_paid',
    'payment_intent.succeeded': 'amount_received',
}
PAYMENT_FAILED_EVENTS = ('invoice.payment_failed', 'payment_intent.payment_failed')
SUBSCRIPTION_DELETED_EVENT = 'customer.subscription.deleted'


def _subscription_id(event_type: str, obj: Dict[str, Any]) -> str:
    sub_id = (obj.get('metadata') or {}).get('subscription_id')
    if not sub_id:
        error_msg = f"Missing subscription id in {event_type} event"
        logging.error(error_msg)
        raise ValidationError(error_msg)
    return sub_id


def _payment_key(obj: Dict[str, Any]) -> Optional[str]:
    # An invoice is keyed by its payment intent, the id charge() records.
    return obj.get('payment_intent') or obj.get('id')


def _failure_reason(obj: Dict[str, Any]) -> str:
    error = obj.get('last_payment_error') or {}
    return error.get('message') or 'Payment failed'


def process_event(event: dict, reconciler: PaymentReconciler) -> Dict[str, Any]:
    """
    Apply a verified Stripe event to the matching subscription.

    Payments and failures are keyed by the payment intent id (the object id
    when there is none), so a redelivered event changes nothing.

    :param event: Dictionary representing the Stripe event payload.
    :param reconciler: applies payments, failures and cancellations.
    :return: ``{"subscription_id", "status"}`` of the affected subscription, empty when nothing changed.
    :raises ValidationError: on a malformed event.
    """
    try:
        event_type = event.get('type')
        if not event_type:
            error_msg = "Missing 'type' in event payload"
            logging.error(error_msg)
            raise ValidationError(error_msg)

        event_id = event.get('id', 'N/A')
        timestamp = event.get('created', datetime.datetime.now(datetime.timezone.utc).timestamp())
        obj = event.get('data', {}).get('object', {})

        if event_type in PAYMENT_SUCCEEDED_EVENTS:
            sub_id = _subscription_id(event_type, obj)
            amount = Decimal(obj.get(PAYMENT_SUCCEEDED_EVENTS[event_type]) or 0) / 100
            evidence = PaymentEvidence(
                transaction_id=_payment_key(obj) or event_id,
                method=PaymentMethod.ONLINE,
                amount=amount,
                receipt_url=obj.get('hosted_invoice_url') or obj.get('receipt_url'),
                plan_type=(obj.get('metadata') or {}).get('plan_type'),
            )
            try:
                outcome = reconciler.record_payment(sub_id, evidence, performed_by='stripe')
            except NotFoundError:
                logging.info(f"Event {event_id}: Subscription with id {sub_id} not found during {event_type} processing.")
                return {}
            logging.info(
                f"Event {event_id} at {timestamp}: {event_type} processed "
                f"({'applied' if outcome.applied else 'already applied'}). Subscription {sub_id} is {outcome.subscription.status.value}."
            )
            return {"subscription_id": sub_id, "status": outcome.subscription.status.value}

        elif event_type in PAYMENT_FAILED_EVENTS:
            sub_id = _subscription_id(event_type, obj)
            try:
                subscription = reconciler.record_failure(
                    sub_id, _failure_reason(obj), performed_by='stripe', failure_id=_payment_key(obj)
                )
            except NotFoundError:
                logging.info(f"Event {event_id}: Subscription with id {sub_id} not found during {event_type} processing.")
                return {}
            logging.info(f"Event {event_id} at {timestamp}: {event_type} processed. Subscription {sub_id} is {subscription.status.value}.")
            return {"subscription_id": sub_id, "status": subscription.status.value}

        elif event_type == SUBSCRIPTION_DELETED_EVENT:
            sub_id = _subscription_id(event_type, obj)
            try:
                subscription = reconciler.cancel(sub_id, performed_by='stripe')
            except NotFoundError:
                logging.info(f"Event {event_id}: Subscription with id {sub_id} not found during {event_type} processing.")
                return {}
            except AlreadyCanceledError:
                logging.info(f"Event {event_id}: Subscription {sub_id} was already canceled.")
                return {"subscription_id": sub_id, "status": "canceled"}
            logging.info(f"Event {event_id} at {timestamp}: {event_type} processed successfully. Subscription {sub_id} set to canceled.")
            return {"subscription_id": sub_id, "status": subscription.status.value}

        else:
            logging.info(f"Unhandled event type: {event_type} for event {event_id} at {timestamp}. No action taken.")
            return {}

    except Exception as e:
        logging.error(e, exc_info=True)
        raise
