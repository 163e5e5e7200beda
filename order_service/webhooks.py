"""
webhooks.py — Webhook Ingestion Guard for Paystack Callbacks

Every inbound event is authenticated with an HMAC-SHA512 over the raw body,
then routed by event type to the payment flow coordinator.

Response policy:
    • Bad signature → Unauthorized (401), nothing processed.
    • Transaction abort while materializing an order → propagated, the gateway may
      retry the whole event because nothing was committed.
    • Any other internal failure → logged and acknowledged. The gateway cannot fix
      it, so retrying would only produce a retry storm.
"""

import hashlib
import hmac
import json
import logging
from typing import Optional

from . import config
from .errors import TransactionAborted, Unauthorized
from .workflow import PaymentFlowCoordinator

log = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"
ACKNOWLEDGED = {"message": "Webhook received"}


def sign(body: bytes, secret_key: str) -> str:
    """Hex HMAC-SHA512 of the raw body, as sent in the signature header."""
    return hmac.new(secret_key.encode(), body, hashlib.sha512).hexdigest()


class WebhookIngestionGuard:
    """
    Authenticates and routes gateway webhooks.

    Args:
        coordinator (PaymentFlowCoordinator): Applies charge events to orders.
        secret_key (str): Shared secret used for the signature.
    """

    def __init__(self, coordinator: PaymentFlowCoordinator,
                 secret_key: str = config.PAYSTACK_SECRET_KEY):
        self.coordinator = coordinator
        self.secret_key = secret_key
        self._handlers = {
            "charge.success": self.coordinator.confirm_charge,
            "charge.failed": self.coordinator.fail_charge,
            "transfer.success": self._log_transfer,
            "transfer.failed": self._log_transfer,
        }

    def verify_signature(self, body: bytes, signature: Optional[str]):
        """
        Raises:
            Unauthorized: If the secret is not configured or the signature does not match.
        """
        if not self.secret_key:
            log.critical("PAYSTACK_SECRET_KEY is not set. Rejecting all webhooks.")
            raise Unauthorized("Invalid signature")
        expected = sign(body, self.secret_key)
        if not signature or not hmac.compare_digest(expected, signature):
            log.warning("Webhook with invalid signature rejected.")
            raise Unauthorized("Invalid signature")

    def handle(self, body: bytes, signature: Optional[str]) -> dict:
        """
        Processes one webhook delivery.

        Args:
            body (bytes): Raw request body, exactly as received.
            signature (str | None): Value of the x-paystack-signature header.

        Returns:
            dict: Acknowledgement for the gateway.

        Raises:
            Unauthorized: Signature mismatch.
            TransactionAborted: Order materialization was rolled back.
        """
        self.verify_signature(body, signature)

        try:
            event = json.loads(body)
            kind = event["event"]
            data = event.get("data") or {}
            if not isinstance(data, dict):
                raise TypeError("event data is not an object")
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            log.error(f"Malformed webhook payload dropped: {e}")
            return ACKNOWLEDGED

        handler = self._handlers.get(kind)
        if handler is None:
            log.info(f"Unhandled webhook event: {kind}")
            return ACKNOWLEDGED

        log.info(f"[Order: {data.get('reference', 'UNKNOWN')}] Paystack webhook: {kind}")
        try:
            handler(data)
        except TransactionAborted:
            log.error(f"[Order: {data.get('reference', 'UNKNOWN')}] {kind} aborted, gateway may retry.")
            raise
        except Exception as e:
            log.critical(f"[Order: {data.get('reference', 'UNKNOWN')}] Error handling {kind}: {e}. "
                         f"Event acknowledged, manual check required!", exc_info=True)
        return ACKNOWLEDGED

    def _log_transfer(self, data: dict):
        recipient = data.get("recipient") or {}
        log.info(f"[TRANSFER] {data.get('reference')} - ₦{data.get('amount')} to "
                 f"{recipient.get('name', 'UNKNOWN')}: {data.get('status', 'n/a')}")
