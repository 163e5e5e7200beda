"""
This module provides communication clients for external systems used by the order service:
- Paystack payment gateway (REST API)
- Telegram Bot API for the operator channel (REST API)
- Notification queue (RabbitMQ)
Each class encapsulates its protocol logic, error handling, and connection management.
"""

import json
import logging
import queue
import threading
import time
from typing import Optional

import httpx
import pika

from . import config
from .errors import GatewayFailure, NotificationUnreachable
from .models import GatewaySession

log = logging.getLogger(__name__)

NOTIFICATION_QUEUE = "notifications.telegram"
NOTIFICATION_DLQ = "notifications.telegram.dlq"


# --- Paystack Client (REST) ---
class PaystackClient:
    """
    Client for the Paystack transaction API.
    Opens payment sessions for the gateway flow. Settlement itself is reported
    back asynchronously through the webhook.
    """
    def __init__(self, secret_key: str = config.PAYSTACK_SECRET_KEY,
                 base_url: str = config.PAYSTACK_BASE_URL,
                 callback_url: Optional[str] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        """
        Initializes the HTTP client with bearer authentication and timeouts.

        Args:
            secret_key (str): Paystack secret key.
            base_url (str): API root, overridable for the mock gateway.
            callback_url (str | None): Where Paystack redirects the customer after payment.
            transport (httpx.BaseTransport | None): Custom transport (tests).
        """
        timeout_config = httpx.Timeout(5.0, read=10.0)
        self.callback_url = callback_url or f"{config.FRONTEND_URL}/payment-success"
        self.client = httpx.Client(
            base_url=base_url,
            timeout=timeout_config,
            headers={"Authorization": f"Bearer {secret_key}"},
            transport=transport,
        )

    def close(self):
        self.client.close()

    def open_session(self, email: str, amount_minor_units: int, reference: str,
                     metadata: dict) -> GatewaySession:
        """
        Initializes a Paystack transaction.

        Args:
            email (str): Customer email.
            amount_minor_units (int): Amount in kobo.
            reference (str): Our order reference, reused as the transaction reference.
            metadata (dict): Opaque payload echoed back in the webhook.

        Returns:
            GatewaySession: Redirect URL for the customer and the transaction reference.

        Raises:
            GatewayFailure: If the amount is invalid or Paystack cannot be reached or refuses.
        """
        if amount_minor_units <= 0:
            raise GatewayFailure(f"Invalid amount: {amount_minor_units}. Amount must be positive.")

        payload = {
            "email": email,
            "amount": amount_minor_units,
            "reference": reference,
            "callback_url": self.callback_url,
            "metadata": metadata,
        }
        try:
            response = self.client.post("/transaction/initialize", json=payload)
            response.raise_for_status()
            data = response.json()["data"]
            session = GatewaySession(redirectUrl=data["authorization_url"],
                                     reference=data.get("reference", reference))
        except httpx.HTTPStatusError as e:
            log.error(f"[Order: {reference}] Paystack refused the session (HTTP {e.response.status_code}).")
            raise GatewayFailure("Failed to initialize payment", detail=_safe_json(e.response)) from e
        except httpx.HTTPError as e:
            log.error(f"[Order: {reference}] Paystack unreachable: {e}")
            raise GatewayFailure(f"Failed to initialize payment: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            log.error(f"[Order: {reference}] Unexpected Paystack response: {e}")
            raise GatewayFailure("Failed to initialize payment: malformed gateway response") from e

        log.info(f"[Order: {reference}] Paystack session opened.")
        return session


def _safe_json(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return response.text


# --- Telegram Client (REST) ---
class TelegramClient:
    """
    Client for the Telegram Bot API.
    Sends operator messages. Every failure surfaces as NotificationUnreachable.
    """
    def __init__(self, bot_token: str = config.TELEGRAM_BOT_TOKEN,
                 api_url: str = config.TELEGRAM_API_URL,
                 transport: Optional[httpx.BaseTransport] = None):
        self.client = httpx.Client(
            base_url=f"{api_url}/bot{bot_token}",
            timeout=httpx.Timeout(10.0, read=25.0),
            transport=transport,
        )

    def close(self):
        self.client.close()

    def send_message(self, chat_id: str, text: str, parse_mode: Optional[str] = "Markdown") -> dict:
        """
        Sends a message to a chat.

        Raises:
            NotificationUnreachable: On transport errors or a refused message. `parse_error`
                is set when Telegram could not parse the Markdown entities.
        """
        payload = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        try:
            response = self.client.post("/sendMessage", json=payload)
        except httpx.HTTPError as e:
            raise NotificationUnreachable(f"Telegram unreachable: {e}") from e

        body = _safe_json(response)
        if response.is_error or not (isinstance(body, dict) and body.get("ok")):
            description = body.get("description", "") if isinstance(body, dict) else str(body)
            raise NotificationUnreachable(
                f"Telegram refused message (HTTP {response.status_code}): {description}",
                parse_error="parse" in description.lower(),
            )
        return body


# --- Notification Publisher (MQ) ---
def declare_notification_queues(channel):
    """Declares the notification queue and its dead letter queue."""
    channel.queue_declare(queue=NOTIFICATION_DLQ, durable=True)
    channel.queue_declare(
        queue=NOTIFICATION_QUEUE,
        durable=True,
        arguments={
            "x-dead-letter-exchange": "",
            "x-dead-letter-routing-key": NOTIFICATION_DLQ,
        },
    )


def mq_connection_parameters(heartbeat: int = 60) -> pika.ConnectionParameters:
    credentials = pika.PlainCredentials(config.RABBITMQ_USER, config.RABBITMQ_PASSWORD)
    return pika.ConnectionParameters(host=config.RABBITMQ_HOST, credentials=credentials,
                                     heartbeat=heartbeat)


_STOP = object()


class NotificationPublisher:
    """
    Publishes notification messages to RabbitMQ from a background thread.

    `publish()` only appends to an in-process outbox and returns immediately, so a
    request never waits for the broker. The outbox thread is the sole owner of the
    pika connection. While idle it services heartbeats; a connection found dead on
    publish is replaced and the message republished, up to `max_attempts` tries.

    Args:
        parameters (pika.ConnectionParameters | None): Broker address and credentials.
        connection_factory: Callable opening a connection (pika.BlockingConnection).
        max_attempts (int): Publish attempts per message before it is dropped.
        retry_delay (float): Base delay between attempts, doubled each time.
        idle_timeout (float): Seconds between heartbeat checks of an idle connection.
        outbox_size (int): Messages held while the broker is unreachable.
    """
    def __init__(self, parameters: Optional[pika.ConnectionParameters] = None,
                 connection_factory=pika.BlockingConnection,
                 max_attempts: int = config.NOTIFICATION_MAX_ATTEMPTS,
                 retry_delay: float = config.NOTIFICATION_RETRY_BASE_DELAY,
                 idle_timeout: float = 20.0,
                 outbox_size: int = 1000,
                 sleep=time.sleep):
        self.parameters = parameters or mq_connection_parameters()
        self.connection_factory = connection_factory
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.idle_timeout = idle_timeout
        self.sleep = sleep
        self.connection = None
        self.channel = None
        self._outbox = queue.Queue(maxsize=outbox_size)
        self._thread = None
        self._lock = threading.Lock()

    def publish(self, message: dict):
        """
        Hands a message to the outbox thread.
        Raises:
            queue.Full: If the outbox is full (broker unreachable for a long time).
        """
        self._ensure_thread()
        self._outbox.put_nowait(message)

    def close(self, timeout: float = 5.0):
        """Publishes what is still in the outbox, then closes the connection."""
        with self._lock:
            thread = self._thread
        if thread is not None and thread.is_alive():
            self._outbox.put(_STOP, timeout=timeout)
            thread.join(timeout)
        else:
            self._disconnect()

    def _ensure_thread(self):
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, name="notification-publisher", daemon=True)
                self._thread.start()

    def _run(self):
        while True:
            try:
                message = self._outbox.get(timeout=self.idle_timeout)
            except queue.Empty:
                self._keep_alive()
                continue
            try:
                if message is _STOP:
                    self._disconnect()
                    return
                self.send(message)
            except Exception as e:
                log.error(f"Notification publisher: unexpected error, message dropped. {e}", exc_info=True)
            finally:
                self._outbox.task_done()

    def _connect(self):
        """
        Establishes the RabbitMQ connection and declares the queues.
        Raises:
            pika.exceptions.AMQPConnectionError: If the connection fails.
        """
        self.connection = self.connection_factory(self.parameters)
        self.channel = self.connection.channel()
        declare_notification_queues(self.channel)
        log.info("Notification publisher connected to RabbitMQ.")

    def _disconnect(self):
        connection, self.connection, self.channel = self.connection, None, None
        if connection is None or not connection.is_open:
            return
        try:
            connection.close()
        except pika.exceptions.AMQPError as e:
            log.debug(f"Notification publisher: closing a broken connection failed: {e!r}")

    def _keep_alive(self):
        if self.connection is None or self.connection.is_closed:
            return
        try:
            self.connection.process_data_events(time_limit=0)
        except pika.exceptions.AMQPError as e:
            log.warning(f"Notification publisher: connection lost while idle ({e!r}), will reconnect.")
            self._disconnect()

    def send(self, message: dict) -> bool:
        """
        Sends a persistent JSON message to the notification queue, reconnecting when
        the current connection turns out to be dead.

        Returns:
            bool: True once the broker took the message, False if it was dropped after
            `max_attempts` failed attempts.
        """
        reference = message.get("orderReference", "UNKNOWN")
        body = json.dumps(message)
        for attempt in range(1, self.max_attempts + 1):
            try:
                if self.connection is None or self.connection.is_closed:
                    self._connect()
                self.channel.basic_publish(
                    exchange='',
                    routing_key=NOTIFICATION_QUEUE,
                    body=body,
                    properties=pika.BasicProperties(delivery_mode=2, content_type="application/json")
                )
                return True
            except pika.exceptions.AMQPError as e:
                log.warning(f"[Order: {reference}] Publish attempt {attempt}/{self.max_attempts} failed: {e!r}")
                self._disconnect()
                if attempt < self.max_attempts:
                    self.sleep(self.retry_delay * 2 ** (attempt - 1))
        log.error(f"[Order: {reference}] Notification dropped, RabbitMQ unreachable.")
        return False
