"""Notification Service FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from shared.config import Settings
from shared.events import (
    EventType,
    PaymentFailedEvent,
    PaymentPaidEvent,
    PaymentRefundedEvent,
    PaymentStatusChangedEvent,
)
from shared.message_broker import MessageBroker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="notification-service",
    service_port=8005,
)

# Message broker
message_broker = MessageBroker(settings.rabbitmq_url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""

    # Startup
    logger.info("Starting Notification Service...")

    await message_broker.connect()
    await subscribe_to_events()

    logger.info("Notification Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Notification Service...")
    await message_broker.disconnect()


app = FastAPI(title="Notification Service", lifespan=lifespan)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "notification-service"}


# Notification Logic
async def send_email(recipient: str, subject: str, body: str):
    """
    Send email notification.

    Delivery is not wired to a mail provider; the message is logged.
    """
    logger.info(f"[EMAIL] To: {recipient}")
    logger.info(f"[EMAIL] Subject: {subject}")
    logger.info(f"[EMAIL] Body: {body}")
    logger.info("-" * 60)


def recipient_for(event: PaymentStatusChangedEvent) -> str:
    return event.metadata.get("email") or f"user_{event.user_id}@example.com"


def describe_target(event: PaymentStatusChangedEvent) -> str:
    if event.order_id is not None:
        return f"order #{event.order_id}"
    if event.booking_id is not None:
        return f"booking {str(event.booking_id)[:8]}"
    return f"payment {str(event.payment_id)[:8]}"


# Event Handlers
async def handle_payment_paid(event: PaymentPaidEvent):
    """Notify the owner that a payment went through."""
    await send_email(
        recipient=recipient_for(event),
        subject="Payment Successful",
        body=f"We received your payment of {event.amount:,} VND for {describe_target(event)}. "
             f"Order code: {event.order_code}"
    )


async def handle_payment_failed(event: PaymentFailedEvent):
    await send_email(
        recipient=recipient_for(event),
        subject="Payment Failed",
        body=f"Your payment of {event.amount:,} VND for {describe_target(event)} did not complete "
             f"and it has been cancelled. Order code: {event.order_code}"
    )


async def handle_payment_refunded(event: PaymentRefundedEvent):
    await send_email(
        recipient=recipient_for(event),
        subject="Payment Refunded",
        body=f"{event.refunded_amount:,} VND of your {event.amount:,} VND payment for "
             f"{describe_target(event)} has been refunded."
    )


async def subscribe_to_events():
    """Subscribe to payment status events."""
    await message_broker.subscribe_to_event(
        EventType.PAYMENT_PAID,
        "notification_service_payment_paid",
        handle_payment_paid,
    )

    await message_broker.subscribe_to_event(
        EventType.PAYMENT_FAILED,
        "notification_service_payment_failed",
        handle_payment_failed,
    )

    await message_broker.subscribe_to_event(
        EventType.PAYMENT_REFUNDED,
        "notification_service_payment_refunded",
        handle_payment_refunded,
    )

    logger.info("Subscribed to notification events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
