"""Outgoing user messages.

Delivery goes through the chat transport with the usual retry budget. A
message that still cannot be delivered is logged and dropped: notifications
never undo a state change that has already been committed.
"""

from __future__ import annotations

import logging

from errandhub.adapters.chat import ChatTransport
from errandhub.db_models import Offer, Task, TaskKind
from errandhub.errors import ExternalServiceError
from errandhub.retry import call_external
from errandhub.utils import status_str

logger = logging.getLogger("errandhub.notifications")


class NotificationGateway:
    def __init__(self, transport: ChatTransport):
        self._transport = transport

    async def notify(self, user_id: str, text: str, options: dict | None = None) -> bool:
        try:
            await call_external(
                "send_message", self._transport.send_message, user_id, text, options
            )
        except ExternalServiceError as exc:
            logger.error("Could not notify %s: %s", user_id, exc)
            return False
        return True

    async def notify_many(self, user_ids: list[str], text: str, options: dict | None = None) -> int:
        delivered = 0
        for user_id in user_ids:
            if await self.notify(user_id, text, options):
                delivered += 1
        return delivered


def task_summary(task: Task) -> str:
    if task.kind == TaskKind.delivery:
        lines = [
            f"Delivery {task.id}",
            f"Pickup: {task.pickup_address}",
            f"Drop-off: {task.dropoff_address}",
        ]
    else:
        lines = [f"Errand {task.id}", f"Location: {task.location_address}"]
    if task.instructions:
        lines.append(f"Instructions: {task.instructions}")
    return "\n".join(lines)


def new_task_text(task: Task, distance_km: float) -> str:
    return (
        f"New {status_str(task.kind)} request {distance_km:.1f} km away.\n"
        f"{task_summary(task)}\n"
        "Reply with your price to make an offer."
    )


def offer_buttons(task: Task) -> dict:
    return {"reply_markup": {"action": "make_offer", "task_id": task.id}}


def no_workers_text(task: Task) -> str:
    who = "riders" if task.kind == TaskKind.delivery else "erranders"
    return (
        f"Sorry, no {who} found near you right now. "
        "Your request stays open and you can search again later."
    )


def offer_received_text(offer: Offer, worker_name: str, rating: float, reviews: int) -> str:
    vehicle = f" ({status_str(offer.vehicle_type)})" if offer.vehicle_type else ""
    stars = f"{rating:.1f}/5 from {reviews} review(s)" if reviews else "no reviews yet"
    return (
        f"New offer on task {offer.task_id}: {offer.price} from {worker_name}{vehicle}, "
        f"{stars}."
    )


def offer_accept_options(offer: Offer) -> dict:
    return {"reply_markup": {"action": "accept_offer", "offer_id": offer.id}}


def offer_accepted_text(task: Task) -> str:
    return f"Your offer on task {task.id} was accepted. A private chat has been opened."


def offer_rejected_text(task: Task) -> str:
    return f"Task {task.id} was taken by another worker."


def customer_accepted_text(task: Task, worker_name: str, channel_ref: str | None) -> str:
    chat = f" Chat: {channel_ref}." if channel_ref else " Your private chat is being set up."
    return f"You accepted {worker_name} for task {task.id}.{chat}"


def in_progress_text(task: Task) -> str:
    return f"Task {task.id} is now in progress."


def completed_text(task: Task) -> str:
    return f"Task {task.id} is complete. Thank you!"


def task_cancelled_text(task: Task) -> str:
    return f"Task {task.id} was cancelled by the customer."


def task_expired_text(task: Task) -> str:
    return f"Your request {task.id} expired without an accepted offer."


def offer_expired_text(task: Task) -> str:
    return f"Task {task.id} expired before the customer accepted an offer."


def dispute_text(task: Task, reason: str | None) -> str:
    suffix = f": {reason}" if reason else ""
    return f"A dispute was raised on task {task.id}{suffix}. Support will follow up."


def dispute_resolved_text(task: Task) -> str:
    return f"The dispute on task {task.id} was resolved as {status_str(task.status)}."


def channel_welcome_text(task: Task) -> str:
    return (
        f"{task_summary(task)}\n\n"
        "Commands:\n"
        "/in_progress - worker confirms payment and starts\n"
        "/completed - customer confirms completion\n"
        "/dispute - raise a dispute"
    )
