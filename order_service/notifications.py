"""
notifications.py — Operator Notifications (fire-and-forget)

Order and payment events are rendered to Telegram Markdown and pushed onto a
RabbitMQ queue. A background worker drains the queue and delivers each message
with bounded retry. Nothing in here ever raises into a request path.

Flow:
    request → NotificationDispatcher.dispatch() → in-process outbox
            → NotificationPublisher (daemon thread) → queue 'notifications.telegram'
            → NotificationWorker (daemon thread) → Telegram Bot API
            → after the last failed attempt: dead letter queue
"""

import json
import logging
import re
import time
from enum import Enum
from typing import Optional

import pika

from . import config
from .clients import (NOTIFICATION_QUEUE, NotificationPublisher, TelegramClient,
                      declare_notification_queues, mq_connection_parameters)
from .errors import NotificationUnreachable
from .models import DeliveryMethod, Order

log = logging.getLogger(__name__)

_MARKDOWN_SPECIAL = re.compile(r"([_*`\[])")


class NotificationKind(str, Enum):
    NEW_ORDER = "new_order"
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"


def escape_markdown(text) -> str:
    return _MARKDOWN_SPECIAL.sub(r"\\\1", str(text))


def strip_markdown(text: str) -> str:
    """Plain-text fallback for messages Telegram could not parse."""
    return re.sub(r"[*_`]", "", text.replace("\\", ""))


def _naira(amount: int) -> str:
    return f"₦{amount:,}"


def _order_body(order: Order) -> str:
    lines = [
        f"👤 *Customer:* {escape_markdown(order.customerName)}",
        f"📞 *Phone:* {escape_markdown(order.phoneNumber)}",
        f"🔑 *Verification Code:* `{order.verificationCode}`",
    ]
    if order.deliveryMethod == DeliveryMethod.PICKUP:
        lines.append(f"📍 *Location:* {escape_markdown(order.address)}")
    else:
        lines.append(f"📍 *Address:* {escape_markdown(order.address)}")

    lines.append("")
    lines.append("🛒 *Items:*")
    for item in order.items:
        lines.append(f"• {escape_markdown(item.productName)} x {item.quantity} ({_naira(item.price)})")
        if item.proteinNames:
            lines.append(f"  _Proteins: {', '.join(escape_markdown(n) for n in item.proteinNames)}_")
    if order.deliveryFee:
        lines.append(f"🚚 Delivery: {_naira(order.deliveryFee)}")
    lines.append("")
    lines.append(f"💰 *Total Amount: {_naira(order.totalAmount)}*")
    lines.append(f"🧾 Ref: `{order.orderReference}`")
    return "\n".join(lines)


def format_message(kind: NotificationKind, order: Order) -> str:
    method_tag = "PICKUP" if order.deliveryMethod == DeliveryMethod.PICKUP else "DELIVERY"

    if kind == NotificationKind.NEW_ORDER:
        return f"🔔 *New Order Received!* [{method_tag}]\n\n{_order_body(order)}"

    if kind == NotificationKind.AWAITING_PAYMENT:
        return (f"⏳ *New Order - Awaiting Payment* [{method_tag}]\n\n{_order_body(order)}\n\n"
                f"📲 _Confirm the transfer receipt before preparing._")

    if kind == NotificationKind.PAYMENT_CONFIRMED:
        return (f"💰 *PAYMENT CONFIRMED!* [{method_tag}]\n\n{_order_body(order)}\n\n"
                f"✅ *Status:* PAID\n🍽️ *Order ready for processing!*")

    reason = order.paymentDetails.reason if order.paymentDetails else None
    return (f"❌ *PAYMENT FAILED!*\n\n"
            f"👤 *Customer:* {escape_markdown(order.customerName)}\n"
            f"📞 *Phone:* {escape_markdown(order.phoneNumber)}\n"
            f"💳 *Amount:* {_naira(order.totalAmount)}\n"
            f"🔑 *Reference:* `{order.gatewayReference or order.orderReference}`\n"
            f"❗ *Reason:* {escape_markdown(reason or 'Payment failed')}\n\n"
            f"🔄 _Customer needs to retry payment_")


class NotificationDispatcher:
    """
    Queues operator notifications. `dispatch()` never raises.

    Args:
        publisher: Object with a `publish(message: dict)` method.
        chat_id (str): Operator chat. Notifications are skipped when empty.
    """

    def __init__(self, publisher: Optional[NotificationPublisher] = None,
                 chat_id: str = config.TELEGRAM_ADMIN_CHAT_ID):
        self.publisher = publisher or NotificationPublisher()
        self.chat_id = chat_id

    def dispatch(self, kind: NotificationKind, order: Order) -> bool:
        """
        Queues a notification about an order.

        Returns:
            bool: True if the message was handed to the queue.
        """
        log_prefix = f"[Order: {order.orderReference}]"
        if not self.chat_id:
            log.warning(f"{log_prefix} TELEGRAM_ADMIN_CHAT_ID not set. Skipping '{kind.value}' notification.")
            return False

        message = {
            "kind": kind.value,
            "chatId": self.chat_id,
            "orderReference": order.orderReference,
            "text": format_message(kind, order),
        }
        try:
            self.publisher.publish(message)
        except Exception as e:
            log.error(f"{log_prefix} Could not queue '{kind.value}' notification: {e}")
            return False
        log.info(f"{log_prefix} '{kind.value}' notification queued.")
        return True


class NotificationWorker:
    """
    Delivers queued notifications to Telegram with bounded retry.

    Attempts back off exponentially (base_delay, 2×, 4×, ...). A Markdown parse
    rejection switches the message to plain text for the remaining attempts.
    """

    def __init__(self, telegram: Optional[TelegramClient] = None,
                 max_attempts: int = config.NOTIFICATION_MAX_ATTEMPTS,
                 base_delay: float = config.NOTIFICATION_RETRY_BASE_DELAY,
                 sleep=time.sleep):
        self.telegram = telegram or TelegramClient()
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.sleep = sleep

    def deliver(self, message: dict) -> bool:
        """
        Sends one notification.

        Returns:
            bool: True once Telegram accepted it, False after the last failed attempt.
        """
        log_prefix = f"[Order: {message.get('orderReference', 'UNKNOWN')}]"
        text = message["text"]
        parse_mode = "Markdown"

        for attempt in range(1, self.max_attempts + 1):
            try:
                self.telegram.send_message(message["chatId"], text, parse_mode=parse_mode)
                return True
            except NotificationUnreachable as e:
                if attempt == self.max_attempts:
                    log.error(f"{log_prefix} Notification dropped after {attempt} attempt(s): {e}")
                    return False
                if e.parse_error and parse_mode:
                    log.warning(f"{log_prefix} Telegram could not parse Markdown, resending as plain text.")
                    parse_mode = None
                    text = strip_markdown(text)
                    continue
                delay = self.base_delay * 2 ** (attempt - 1)
                log.warning(f"{log_prefix} Notification attempt {attempt} failed ({e}), retrying in {delay}s...")
                self.sleep(delay)
        return False

    def on_message(self, ch, method, properties, body):
        """RabbitMQ callback. Undeliverable or malformed messages go to the dead letter queue."""
        try:
            message = json.loads(body)
        except json.JSONDecodeError:
            message = None
        if not isinstance(message, dict) or "chatId" not in message or "text" not in message:
            log.error(f"[NOTIFY] Invalid notification message received: {body!r}")
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
            return

        if self.deliver(message):
            ch.basic_ack(delivery_tag=method.delivery_tag)
        else:
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)


def start_notification_worker(worker: Optional[NotificationWorker] = None):
    """
    Runs the notification consumer loop. Meant for a daemon thread.
    On broker loss it reconnects after 10 seconds.
    """
    worker = worker or NotificationWorker()
    log.info("Notification worker thread starting...")
    while True:
        try:
            connection = pika.BlockingConnection(mq_connection_parameters())
            channel = connection.channel()
            declare_notification_queues(channel)
            channel.basic_qos(prefetch_count=1)

            log.info("[NOTIFY] Worker active, consuming notifications.")
            channel.basic_consume(queue=NOTIFICATION_QUEUE, on_message_callback=worker.on_message)
            channel.start_consuming()

        except pika.exceptions.AMQPConnectionError:
            log.warning("Notification worker: lost connection to RabbitMQ. Reconnecting in 10s...")
            time.sleep(10)
        except Exception as e:
            log.error(f"Notification worker: critical error. {e}. Restarting in 10s.")
            time.sleep(10)
