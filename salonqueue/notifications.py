import httpx
import structlog

from .config import settings
from .models import Booking, Salon, User

log = structlog.get_logger("salonqueue.notifications")


class PushNotifier:
    """Fire-and-forget device push through an HTTP gateway.

    `send_to_device` never raises: delivery problems are logged and reported
    as False so a committed queue change is never reported as failed.
    """

    def __init__(self, gateway_url: str | None = None, api_key: str | None = None, timeout: float | None = None):
        self.gateway_url = (gateway_url if gateway_url is not None else settings.PUSH_GATEWAY_URL).strip()
        self.api_key = (api_key if api_key is not None else settings.PUSH_GATEWAY_KEY).strip()
        self.timeout = float(timeout if timeout is not None else settings.PUSH_TIMEOUT_SECONDS)

    def _post(self, body: dict) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(self.gateway_url, json=body, headers=headers)

    def send_to_device(self, device_token: str | None, title: str, body: str, data: dict | None = None) -> bool:
        if not device_token:
            return False
        if not self.gateway_url:
            log.info("push_skipped_no_gateway", title=title, device_token=device_token)
            return False
        payload = {
            "token": device_token,
            "notification": {"title": title, "body": body},
            "data": {k: str(v) for k, v in (data or {}).items()},
        }
        try:
            resp = self._post(payload)
            resp.raise_for_status()
        except Exception:
            log.warning("push_send_failed", title=title, device_token=device_token, exc_info=True)
            return False
        log.info("push_sent", title=title, device_token=device_token)
        return True


_notifier: PushNotifier | None = None


def get_notifier() -> PushNotifier:
    global _notifier
    if _notifier is None:
        _notifier = PushNotifier()
    return _notifier


def _booking_data(kind: str, booking: Booking, salon: Salon) -> dict:
    return {"type": kind, "bookingId": booking.id, "salonId": salon.id}


def _send(notifier, user: User | None, title: str, body: str, data: dict) -> bool:
    if notifier is None or user is None or not user.device_token:
        return False
    try:
        return bool(notifier.send_to_device(user.device_token, title, body, data))
    except Exception:
        log.warning("push_notifier_error", title=title, exc_info=True)
        return False


def notify_queue_joined(notifier, user: User | None, booking: Booking, salon: Salon, wait_minutes: int | None) -> bool:
    return _send(
        notifier,
        user,
        "Queue Update",
        f"You're now #{booking.queue_position} at {salon.name}. Estimated wait: {wait_minutes or 0} mins",
        {**_booking_data("queue_update", booking, salon), "queuePosition": booking.queue_position},
    )


def notify_almost_ready(notifier, user: User | None, booking: Booking, salon: Salon) -> bool:
    return _send(
        notifier,
        user,
        "Almost Your Turn!",
        f"You're next in line at {salon.name}. Please be ready!",
        _booking_data("almost_ready", booking, salon),
    )


def notify_booking_started(notifier, user: User | None, booking: Booking, salon: Salon) -> bool:
    return _send(
        notifier,
        user,
        "Service Started",
        f"Your service at {salon.name} has started!",
        _booking_data("booking_started", booking, salon),
    )


def notify_booking_completed(notifier, user: User | None, booking: Booking, salon: Salon) -> bool:
    return _send(
        notifier,
        user,
        "Service Completed",
        f"Your service at {salon.name} is complete! Please rate your experience.",
        _booking_data("booking_completed", booking, salon),
    )


def notify_booking_cancelled(notifier, user: User | None, booking: Booking, salon: Salon) -> bool:
    return _send(
        notifier,
        user,
        "Booking Cancelled",
        f"Your booking at {salon.name} has been cancelled.",
        _booking_data("booking_cancelled", booking, salon),
    )


def notify_priority_started(notifier, user: User | None, booking: Booking, salon: Salon, reason: str) -> bool:
    return _send(
        notifier,
        user,
        "Priority Service",
        f"You've been called for priority service at {salon.name}.",
        {**_booking_data("priority_started", booking, salon), "reason": reason},
    )


def notify_salon_closed(notifier, user: User | None, booking: Booking, salon: Salon, reason: str) -> bool:
    return _send(
        notifier,
        user,
        "Salon Closed",
        f"{salon.name} has closed: {reason}. Your queue spot is no longer being served.",
        {**_booking_data("salon_closed", booking, salon), "reason": reason},
    )
