import json
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import stripe

from deyncare_billing.errors import TransientIntegrationError, ValidationError


@dataclass(frozen=True)
class ChargeRequest:
    amount: Decimal
    currency: str
    reference: str
    payer_phone: Optional[str] = None
    payer_account: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayResult:
    """Normalized outcome of a charge, whatever the provider."""
    success: bool
    transaction_id: Optional[str]
    response_code: str
    response_message: str


class PaymentGateway(ABC):

    @abstractmethod
    def charge(self, request: ChargeRequest) -> GatewayResult:
        """
        Initiate a charge.

        A declined payment is a normal result with ``success=False``; only
        transport problems raise.

        :raises TransientIntegrationError: the provider could not be reached.
        """


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


class StripePaymentGateway(PaymentGateway):
    """
    Charges saved customer payment methods with Stripe PaymentIntents and
    verifies webhook signatures.

    Connection and rate-limit errors are retried ``max_retries`` times, the
    request reference doubles as the Stripe idempotency key so a retried
    charge is never taken twice.
    """

    def __init__(self, api_key: Optional[str] = None, max_retries: int = 3, retry_delay: float = 1.0) -> None:
        if api_key:
            stripe.api_key = api_key
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def charge(self, request: ChargeRequest) -> GatewayResult:
        """
        Charge the default payment method of a Stripe customer.

        :param request: ``payer_account`` must be the Stripe customer id.
        :return: the normalized gateway result.
        :raises ValidationError: no customer id on the request.
        :raises TransientIntegrationError: Stripe unreachable after retries.
        """
        if not request.payer_account:
            raise ValidationError("Stripe charges need a customer id as payer_account", {"reference": request.reference})

        attempt = 0
        while attempt < self.max_retries:
            try:
                customer = stripe.Customer.retrieve(request.payer_account)
                payment_method = customer.invoice_settings.default_payment_method
                intent = stripe.PaymentIntent.create(
                    amount=to_minor_units(request.amount),
                    currency=request.currency.lower(),
                    customer=request.payer_account,
                    payment_method=payment_method,
                    off_session=True,
                    confirm=True,
                    metadata={"reference": request.reference, **request.metadata},
                    idempotency_key=request.reference,
                )
                return self._result_from_intent(intent)
            except stripe.CardError as e:
                logging.info(f"Charge {request.reference} declined: {e.user_message or e}")
                return GatewayResult(
                    success=False,
                    transaction_id=self._declined_intent_id(e),
                    response_code=e.code or "card_declined",
                    response_message=e.user_message or str(e),
                )
            except (stripe.APIConnectionError, stripe.RateLimitError) as e:
                logging.error(f"Error charging {request.reference} (attempt {attempt + 1}): {e}", exc_info=True)
                attempt += 1
                time.sleep(self.retry_delay)
            except Exception as e:
                logging.error(f"General error during charge {request.reference}: {e}", exc_info=True)
                raise e
        raise TransientIntegrationError(
            f"Failed to charge {request.reference} after {self.max_retries} attempts",
            {"reference": request.reference},
        )

    @staticmethod
    def _declined_intent_id(error: stripe.CardError) -> Optional[str]:
        intent = getattr(error.error, "payment_intent", None) if error.error else None
        return getattr(intent, "id", None)

    @staticmethod
    def _result_from_intent(intent) -> GatewayResult:
        if intent.status == "succeeded":
            return GatewayResult(True, intent.id, "succeeded", "Payment succeeded")
        return GatewayResult(False, intent.id, intent.status, f"Payment intent is {intent.status}")

    def process_webhook_event(self, payload: str, sig_header: str, endpoint_secret: str) -> Dict[str, Any]:
        """
        Validate a webhook event from Stripe.

        :param payload: The raw payload from the webhook.
        :param sig_header: The Stripe-Signature header from the webhook.
        :param endpoint_secret: The webhook endpoint secret used for signature verification.
        :return: the verified event as a plain dictionary.
        :raises ValidationError: if signature verification fails.
        """
        try:
            stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
        except stripe.SignatureVerificationError as e:
            logging.error(f'Webhook signature verification failed: {e}', exc_info=True)
            raise ValidationError('Invalid signature.')
        except Exception as e:
            logging.error(f'General error processing webhook event: {e}', exc_info=True)
            raise e
        return json.loads(payload)
