"""
Notification dispatch - best-effort email when a form changes approver or reaches a terminal state.

The engine enqueues after its transition commits; a single worker thread owns an
asyncio loop and drains the queue. Delivery failures are logged and counted,
never raised back into the workflow.
"""

import asyncio
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Tuple

import aiosmtplib

from util.logging import logger

from . import config

SUBMITTED = "submitted"
ADVANCED = "advanced"
PROGRESS = "progress"
APPROVED = "approved"
REJECTED = "rejected"

EVENT_KINDS = (SUBMITTED, ADVANCED, PROGRESS, APPROVED, REJECTED)

# Dispositions reported back to the engine
QUEUED = "queued"
SKIPPED = "skipped"
DISABLED = "disabled"


@dataclass
class Notification:
    address: str
    event_kind: str
    form_id: str
    context: Dict[str, Any] = field(default_factory=dict)


def render_message(event_kind: str, context: Dict[str, Any]) -> Tuple[str, str, str]:
    """Build (subject, text, html) for an event."""
    name = context.get("recipient_name", "")
    title = context.get("title", "")
    app_name = context.get("app_name", config.APP_NAME)
    actor = context.get("performed_by", "")

    if event_kind == SUBMITTED:
        subject = "New Submission Pending Your Approval"
        body = (f'A new submission "{title}" has been submitted by {context.get("submitted_by", "")} '
                f'and is pending your approval.')
    elif event_kind == ADVANCED:
        subject = "New Submission Pending Your Approval"
        body = f'Submission "{title}" was approved by {actor} and is now pending your approval.'
    elif event_kind == PROGRESS:
        subject = "Your Submission Has Been Approved"
        body = f'Your submission "{title}" has been approved by {actor}. It is now pending further approval.'
    elif event_kind == APPROVED:
        subject = "Your Submission Has Been Fully Approved"
        body = f'Your submission "{title}" has been fully approved.'
    elif event_kind == REJECTED:
        subject = "Your Submission Has Been Rejected"
        body = f'Your submission "{title}" has been rejected by {actor}.'
        if context.get("reason"):
            body += f' Reason: {context["reason"]}'
    else:
        raise ValueError(f"Unknown notification event: {event_kind}")

    text = f"Hello {name},\n\n{body}\n\nBest Regards,\n{app_name}"
    html = (f"<p>Hello <strong>{name}</strong>,</p><p>{body}</p>"
            f"<p>Best Regards,<br/>{app_name}</p>")
    return subject, text, html


class Notifier(ABC):
    """Abstract delivery channel."""

    @abstractmethod
    async def send(self, address: str, event_kind: str, context: Dict[str, Any]) -> bool:
        """Deliver one message. Returns True on success."""
        pass


class LogNotifier(Notifier):
    """Writes messages to the log instead of sending them."""

    async def send(self, address: str, event_kind: str, context: Dict[str, Any]) -> bool:
        subject, _, _ = render_message(event_kind, context)
        logger.info(f"[Email/log] to={address} subject={subject!r} form={context.get('form_id')}")
        return True


class SMTPNotifier(Notifier):
    """Async SMTP delivery."""

    def __init__(self, host: str = None, port: int = None, username: str = None, password: str = None,
                 secure: bool = None, sender: str = None):
        self.host = host or config.SMTP_HOST
        self.port = port or config.SMTP_PORT
        self.username = username if username is not None else config.SMTP_USER
        self.password = password if password is not None else config.SMTP_PASS
        self.secure = config.SMTP_SECURE if secure is None else secure
        self.sender = sender or config.EMAIL_FROM

    async def send(self, address: str, event_kind: str, context: Dict[str, Any]) -> bool:
        subject, text, html = render_message(event_kind, context)

        message = MIMEMultipart("alternative")
        message["From"] = self.sender
        message["To"] = address
        message["Subject"] = subject
        message.attach(MIMEText(text, "plain"))
        message.attach(MIMEText(html, "html"))

        try:
            await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                use_tls=self.secure,
            )
        except aiosmtplib.SMTPException as e:
            logger.error(f"[Email/SMTP] Failed to send email to {address}: {e}")
            return False

        logger.info(f"[Email/SMTP] Email sent to {address} with subject \"{subject}\"")
        return True


_STOP = object()


class NotificationDispatcher:
    """Queue handoff between committed transitions and the notifier."""

    def __init__(self, notifier: Notifier, enabled: bool = True):
        self.notifier = notifier
        self.enabled = enabled
        self._queue: "queue.Queue" = queue.Queue()
        self._thread = None
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.stats = {"queued": 0, "delivered": 0, "failed": 0, "skipped": 0}

    def start(self):
        """Start the worker thread if it is not running."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="notification-dispatcher", daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0):
        """Drain outstanding notifications and stop the worker."""
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)

    def dispatch(self, notification: Notification) -> str:
        """Enqueue a notification; never blocks on delivery."""
        if not self.enabled:
            logger.log_notification(notification.event_kind, notification.form_id,
                                    notification.address, status=DISABLED)
            return DISABLED

        self.start()
        self._queue.put(notification)
        self._count("queued")
        logger.log_notification(notification.event_kind, notification.form_id, notification.address)
        return QUEUED

    def record_skipped(self, event_kind: str, form_id: str, reason: str) -> str:
        """Note a notification that had no deliverable recipient."""
        self._count("skipped")
        logger.log_notification(event_kind, form_id, status=SKIPPED, error=reason)
        return SKIPPED

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued notification was handled. False on timeout."""
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def _run(self):
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            while True:
                item = self._queue.get()
                try:
                    if item is _STOP:
                        break
                    self._deliver(loop, item)
                finally:
                    self._queue.task_done()
        finally:
            loop.close()

    def _deliver(self, loop: asyncio.AbstractEventLoop, notification: Notification):
        try:
            ok = loop.run_until_complete(
                self.notifier.send(notification.address, notification.event_kind, notification.context)
            )
        except Exception as e:
            # Delivery problems must not escape the worker; the transition is already committed
            ok = False
            logger.log_notification(notification.event_kind, notification.form_id,
                                    notification.address, status="failed", error=e)
        else:
            logger.log_notification(notification.event_kind, notification.form_id,
                                    notification.address, status="delivered" if ok else "failed")

        self._count("delivered" if ok else "failed")

    def _count(self, key: str):
        with self._stats_lock:
            self.stats[key] += 1


def build_notifier() -> Notifier:
    """Pick the SMTP notifier when SMTP is configured, else log only."""
    if config.smtp_configured():
        return SMTPNotifier()
    return LogNotifier()
