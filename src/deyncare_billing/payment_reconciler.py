"""
Turns payment evidence into subscription state.

Payments from every channel (manual EVC/offline entries, online charges,
Stripe webhooks and the auto-renewal job) are applied here, once per
transaction id.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, TypeVar

from deyncare_billing.aggregate import PaymentMethod, PlanType, Subscription, SubscriptionStatus
from deyncare_billing.errors import ConflictError, InvalidTransitionError, ValidationError
from deyncare_billing.integration import call_with_timeout
from deyncare_billing.payment_gateway import ChargeRequest, GatewayResult, PaymentGateway
from deyncare_billing.state_machine import PaymentEvidence, PaymentOutcome, SubscriptionStateMachine

T = TypeVar("T")


@dataclass(frozen=True)
class ChargeOutcome:
    result: GatewayResult
    subscription: Subscription
    applied: bool


def normalize_evidence(
    transaction_id,
    method,
    amount,
    receipt_url: Optional[str] = None,
    plan_type: Optional[str] = None,
) -> PaymentEvidence:
    """Validate raw payment fields and build :class:`PaymentEvidence`."""
    if not transaction_id or not str(transaction_id).strip():
        raise ValidationError("transaction_id is required")
    try:
        payment_method = PaymentMethod(method)
    except ValueError:
        raise ValidationError(f"Invalid payment method: {method!r}", {"method": method})
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid payment amount: {amount!r}", {"amount": amount})
    if not value.is_finite() or value < 0:
        raise ValidationError(f"Payment amount must be a non-negative number, got {amount!r}", {"amount": amount})
    return PaymentEvidence(
        transaction_id=str(transaction_id).strip(),
        method=payment_method,
        amount=value,
        receipt_url=receipt_url,
        plan_type=plan_type,
    )


class PaymentReconciler:
    """
    :param state_machine: applies the resulting transitions.
    :param payment_gateway: needed only for :meth:`charge`.
    :param timeout: seconds to wait for the gateway.
    :param max_conflict_retries: attempts when a concurrent write wins the compare-and-swap.
    """

    def __init__(
        self,
        state_machine: SubscriptionStateMachine,
        payment_gateway: Optional[PaymentGateway] = None,
        timeout: float = 10.0,
        currency: str = "USD",
        max_conflict_retries: int = 3,
    ) -> None:
        self._state_machine = state_machine
        self._payment_gateway = payment_gateway
        self._timeout = timeout
        self._currency = currency
        self._max_conflict_retries = max_conflict_retries

    @property
    def has_gateway(self) -> bool:
        return self._payment_gateway is not None

    def _retry_on_conflict(self, description: str, func: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return func()
            except ConflictError as e:
                attempt += 1
                if attempt >= self._max_conflict_retries:
                    logging.error(f"{description} lost {attempt} concurrent writes, giving up: {e}")
                    raise
                logging.info(f"{description} hit a concurrent write (attempt {attempt}), retrying")

    def record_payment(
        self,
        subscription_id: str,
        evidence: PaymentEvidence,
        performed_by: str = "system",
    ) -> PaymentOutcome:
        """
        Apply a verified payment. Repeating a transaction id is a no-op that
        returns ``applied=False``.

        A lost concurrent write is not retried here.

        :raises ConflictError: another write saved first; the caller decides whether to retry.
        """
        evidence = normalize_evidence(
            evidence.transaction_id, evidence.method, evidence.amount, evidence.receipt_url, evidence.plan_type
        )
        outcome = self._state_machine.record_payment(subscription_id, evidence, performed_by)
        if outcome.applied:
            logging.info(
                f"Payment {evidence.transaction_id} of {evidence.amount} applied to {subscription_id}, "
                f"paid until {outcome.subscription.dates.end_date.isoformat()}"
            )
        return outcome

    def record_failure(
        self,
        subscription_id: str,
        reason: Optional[str] = None,
        performed_by: str = "system",
        failure_id: Optional[str] = None,
    ) -> Subscription:
        """
        Count one failed payment attempt.

        :param failure_id: provider id of the failed attempt; a failure already counted under it is not counted again.
        """
        subscription = self._retry_on_conflict(
            f"Payment failure for {subscription_id}",
            lambda: self._state_machine.record_failure(subscription_id, reason, performed_by, failure_id=failure_id),
        )
        logging.info(
            f"Payment failure recorded for {subscription_id} "
            f"({subscription.payment.failed_payments} so far, status {subscription.status.value})"
        )
        return subscription

    def cancel(self, subscription_id: str, reason: str = "other", performed_by: str = "system") -> Subscription:
        """Cancel with immediate effect after the provider ended the payer's subscription."""
        return self._retry_on_conflict(
            f"Cancellation of {subscription_id}",
            lambda: self._state_machine.cancel(subscription_id, reason=reason, immediate=True, performed_by=performed_by),
        )

    def charge(
        self,
        subscription_id: str,
        payer_phone: Optional[str] = None,
        payer_account: Optional[str] = None,
        reference: Optional[str] = None,
        performed_by: str = "system",
    ) -> ChargeOutcome:
        """
        Charge the current price of a subscription through the payment gateway.

        A successful charge is recorded as a payment under the gateway's
        transaction id; a decline is recorded as a payment failure.

        :param reference: idempotency key sent to the gateway; defaults to one per subscription and day.
        :raises TransientIntegrationError: the gateway timed out or was unreachable.
        """
        if self._payment_gateway is None:
            raise ValidationError("No payment gateway is configured")

        subscription = self._state_machine.get(subscription_id)
        if subscription.is_terminal:
            raise InvalidTransitionError(
                f"Cannot charge subscription {subscription_id} in status {subscription.status.value}",
                {"subscriptionId": subscription_id, "status": subscription.status.value},
            )

        now = self._state_machine.now()
        plan = PlanType.MONTHLY if subscription.status is SubscriptionStatus.TRIAL else subscription.plan.type
        amount = self._state_machine.price_for(plan, subscription.pricing.discount, now)
        request = ChargeRequest(
            amount=amount,
            currency=subscription.pricing.currency or self._currency,
            reference=reference or f"charge_{subscription_id}_{now:%Y%m%d}",
            payer_phone=payer_phone,
            payer_account=payer_account,
            metadata={"subscription_id": subscription_id},
        )
        result = call_with_timeout(
            self._payment_gateway.charge,
            self._timeout,
            request,
            description=f"charge {request.reference}",
        )

        if result.success:
            outcome = self.record_payment(
                subscription_id,
                PaymentEvidence(
                    transaction_id=result.transaction_id,
                    method=PaymentMethod.ONLINE,
                    amount=amount,
                    plan_type=plan.value,
                ),
                performed_by,
            )
            return ChargeOutcome(result, outcome.subscription, outcome.applied)

        logging.info(f"Charge {request.reference} for {subscription_id} failed: {result.response_message}")
        failed = self.record_failure(subscription_id, result.response_message, performed_by, failure_id=result.transaction_id)
        return ChargeOutcome(result, failed, False)
