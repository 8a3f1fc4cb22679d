"""
Notifications for docker-notify: the message variants, the channel manager
and the senders (email, Telegram, ntfy.sh and a generic outgoing webhook).

Each variant renders its own subject and bodies.  A failing channel is
logged and does not stop the others; the manager only raises when no
channel delivered.
"""

import enum
import html
import json
import logging
import smtplib
import ssl
import string
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests

from concurrency import Context

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds
_SMTP_TIMEOUT = 30

_NTFY_PRIORITIES = {'min', 'low', 'default', 'high', 'urgent'}
TELEGRAM_API_URL = "https://api.telegram.org"
TELEGRAM_MAX_LISTED = 10
DEFAULT_MAX_UPDATES_PER_NOTIFICATION = 10
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class NotificationError(Exception):
    """Delivery failed on a channel, or on every channel."""

    def __init__(self, message: str, channel: Optional[str] = None,
                 errors: Sequence[str] = ()):
        self.channel = channel
        self.errors = list(errors)
        super().__init__(f"{channel}: {message}" if channel else message)


class Priority(enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationKind(enum.Enum):
    UPDATE = "update"
    ERROR = "error"
    HEALTH = "health"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Message variants ─────────────────────────────────────────────

@dataclass(frozen=True)
class ImageUpdate:
    """An update verdict annotated with the containers running the image."""
    registry: str
    repository: str
    current_tag: str
    latest_tag: str
    container_names: Tuple[str, ...] = ()
    detected_at: datetime = field(default_factory=_now)

    @property
    def image(self) -> str:
        return f"{self.registry}/{self.repository}"

    @property
    def containers(self) -> str:
        return ", ".join(self.container_names) or "-"

    @classmethod
    def from_verdict(cls, verdict, container_names: Iterable[str] = ()) -> 'ImageUpdate':
        return cls(
            registry=verdict.registry,
            repository=verdict.repository,
            current_tag=verdict.current_tag,
            latest_tag=verdict.latest_tag,
            container_names=tuple(container_names),
            detected_at=verdict.checked_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'registry': self.registry,
            'repository': self.repository,
            'current_tag': self.current_tag,
            'latest_tag': self.latest_tag,
            'container_names': list(self.container_names),
            'detected_at': self.detected_at.isoformat(),
        }


def _html_page(title: str, color: str, content: str, timestamp: datetime) -> str:
    return (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\"><style>\n"
        "body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }\n"
        f".header {{ background-color: {color}; color: white; padding: 20px; text-align: center; }}\n"
        ".content { padding: 20px; }\n"
        ".footer { font-size: 12px; color: #666; padding: 10px 20px; }\n"
        "</style></head><body>\n"
        f"<div class=\"header\"><h2>{html.escape(title)}</h2></div>\n"
        f"<div class=\"content\">\n{content}</div>\n"
        f"<div class=\"footer\"><p>Generated at: {timestamp.strftime(TIME_FORMAT)} UTC</p></div>\n"
        "</body></html>\n"
    )


@dataclass(frozen=True)
class UpdateBatch:
    updates: Tuple[ImageUpdate, ...]
    timestamp: datetime = field(default_factory=_now)

    kind = NotificationKind.UPDATE
    priority = Priority.NORMAL

    def subject(self) -> str:
        if len(self.updates) == 1:
            u = self.updates[0]
            return f"Docker Image Update Available: {u.repository}:{u.current_tag} → {u.latest_tag}"
        return f"Docker Image Updates Available ({len(self.updates)} images)"

    def text(self, max_items: Optional[int] = None) -> str:
        if len(self.updates) == 1:
            u = self.updates[0]
            return (
                "A newer version of a Docker image is available:\n\n"
                f"Image: {u.image}\n"
                f"Container: {u.containers}\n"
                f"Current version: {u.current_tag}\n"
                f"Latest version: {u.latest_tag}\n"
                f"Detected: {u.detected_at.strftime(TIME_FORMAT)}\n\n"
                "Consider updating your container to get the latest features and security fixes."
            )

        lines = [f"Found {len(self.updates)} image updates:", ""]
        for i, u in enumerate(self.updates):
            if max_items is not None and i >= max_items:
                lines.append(f"... and {len(self.updates) - i} more updates")
                lines.append("")
                break
            lines.append(f"{i + 1}. {u.image}")
            lines.append(f"   Container: {u.containers}")
            lines.append(f"   {u.current_tag} → {u.latest_tag}")
            lines.append("")
        lines.append("Consider updating these containers to get the latest features and security fixes.")
        return "\n".join(lines)

    def html(self) -> str:
        parts = []
        for u in self.updates:
            parts.append(
                f"<h3>{html.escape(u.image)}</h3>\n"
                f"<p><strong>Container:</strong> {html.escape(u.containers)}</p>\n"
                f"<p><strong>Current:</strong> {html.escape(u.current_tag)} → "
                f"<strong>Latest:</strong> {html.escape(u.latest_tag)}</p>\n"
                f"<p><strong>Detected:</strong> {u.detected_at.strftime(TIME_FORMAT)}</p>\n"
            )
        return _html_page("Docker Image Updates Available", "#2496ed", "".join(parts), self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'priority': self.priority.value,
            'subject': self.subject(),
            'message': self.text(),
            'timestamp': self.timestamp.isoformat(),
            'count': len(self.updates),
            'updates': [u.to_dict() for u in self.updates],
        }


@dataclass(frozen=True)
class ErrorReport:
    context: str
    error: str
    timestamp: datetime = field(default_factory=_now)

    kind = NotificationKind.ERROR
    priority = Priority.HIGH

    def subject(self) -> str:
        return f"Docker Notify Error: {self.context}"

    def text(self, max_items: Optional[int] = None) -> str:
        return (
            "An error occurred in Docker Notify:\n\n"
            f"Context: {self.context}\n"
            f"Error: {self.error}"
        )

    def html(self) -> str:
        content = (
            f"<p><strong>Context:</strong> {html.escape(self.context)}</p>\n"
            f"<p><strong>Error:</strong> {html.escape(self.error)}</p>\n"
        )
        return _html_page("Docker Notify Error", "#dc3545", content, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'priority': self.priority.value,
            'subject': self.subject(),
            'message': self.text(),
            'timestamp': self.timestamp.isoformat(),
            'context': self.context,
            'error': self.error,
        }


@dataclass(frozen=True)
class HealthReport:
    component: str
    status: str
    details: str = ""
    timestamp: datetime = field(default_factory=_now)

    kind = NotificationKind.HEALTH

    @property
    def priority(self) -> Priority:
        return Priority.HIGH if self.status == "unhealthy" else Priority.NORMAL

    def subject(self) -> str:
        return f"Docker Notify Health Alert: {self.component} is {self.status}"

    def text(self, max_items: Optional[int] = None) -> str:
        message = f"Health check for {self.component} returned status: {self.status.upper()}"
        if self.details:
            message += f"\n\nDetails: {self.details}"
        return message

    def html(self) -> str:
        color = "#dc3545" if self.status == "unhealthy" else "#28a745"
        content = (
            f"<h3>Component: {html.escape(self.component)}</h3>\n"
            f"<p><strong>Status:</strong> {html.escape(self.status.upper())}</p>\n"
        )
        if self.details:
            content += f"<p><strong>Details:</strong> {html.escape(self.details)}</p>\n"
        return _html_page("Docker Notify Health Alert", color, content, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'priority': self.priority.value,
            'subject': self.subject(),
            'message': self.text(),
            'timestamp': self.timestamp.isoformat(),
            'component': self.component,
            'status': self.status,
            'details': self.details,
        }


# ── Channels ─────────────────────────────────────────────────────

class Channel:
    """A delivery target.  ``send`` raises NotificationError on failure."""

    type = "channel"

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def send(self, ctx: Context, notification) -> None:
        raise NotImplementedError


class EmailChannel(Channel):
    """SMTP sender with STARTTLS; sends a text part and an HTML alternative."""

    type = "email"

    def __init__(self, smtp_host: str, from_addr: str, to_addrs: Sequence[str],
                 smtp_port: int = 587, username: Optional[str] = None,
                 password: Optional[str] = None, use_tls: bool = True,
                 subject_prefix: Optional[str] = None, enabled: bool = True):
        super().__init__(enabled)
        if not smtp_host:
            raise ValueError("SMTP host is required")
        if not from_addr:
            raise ValueError("from address is required")
        if not to_addrs:
            raise ValueError("at least one recipient is required")
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_addr = from_addr
        self.to_addrs = list(to_addrs)
        self.subject_prefix = subject_prefix

    def build_message(self, notification) -> EmailMessage:
        subject = notification.subject()
        if self.subject_prefix:
            subject = f"{self.subject_prefix}: {subject}"

        msg = EmailMessage()
        msg['From'] = self.from_addr
        msg['To'] = ", ".join(self.to_addrs)
        msg['Subject'] = subject
        msg['X-Docker-Notify'] = 'true'
        msg['X-Notification-Type'] = notification.kind.value
        msg['X-Notification-Priority'] = notification.priority.value
        if notification.priority in (Priority.HIGH, Priority.CRITICAL):
            msg['X-Priority'] = '1'
            msg['Importance'] = 'high'
        msg.set_content(notification.text())
        msg.add_alternative(notification.html(), subtype='html')
        return msg

    def send(self, ctx: Context, notification) -> None:
        ctx.raise_if_cancelled()
        msg = self.build_message(notification)
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port,
                              timeout=ctx.timeout_for(_SMTP_TIMEOUT)) as smtp:
                if self.use_tls:
                    smtp.starttls(context=ssl.create_default_context())
                if self.username:
                    smtp.login(self.username, self.password or '')
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"failed to send email: {e}", channel=self.type) from e
        logger.info(f"email: notification sent to {', '.join(self.to_addrs)}")


class TelegramChannel(Channel):
    """Bot API sender; one ``sendMessage`` per chat, low priority sent silently."""

    type = "telegram"

    def __init__(self, bot_token: str, chat_ids: Sequence[int],
                 api_url: str = TELEGRAM_API_URL, enabled: bool = True):
        super().__init__(enabled)
        if not bot_token:
            raise ValueError("bot token is required")
        if not chat_ids:
            raise ValueError("at least one chat ID is required")
        self.bot_token = bot_token
        self.chat_ids = list(chat_ids)
        self.api_url = api_url.rstrip('/')

    def send(self, ctx: Context, notification) -> None:
        url = f"{self.api_url}/bot{self.bot_token}/sendMessage"
        text = f"{notification.subject()}\n\n{notification.text(max_items=TELEGRAM_MAX_LISTED)}"

        errors: List[str] = []
        for chat_id in self.chat_ids:
            ctx.raise_if_cancelled()
            payload = {
                'chat_id': chat_id,
                'text': text,
                'disable_notification': notification.priority is Priority.LOW,
            }
            try:
                response = requests.post(url, json=payload, timeout=ctx.timeout_for(_REQUEST_TIMEOUT))
                response.raise_for_status()
            except requests.RequestException as e:
                # The bot token is part of the URL, keep it out of the logs
                status = getattr(e.response, 'status_code', None)
                reason = f"HTTP {status}" if status else type(e).__name__
                logger.warning(f"telegram: failed to send to chat {chat_id}: {reason}")
                errors.append(f"chat {chat_id}: {reason}")
                continue
            logger.debug(f"telegram: sent message to chat {chat_id}")

        if len(errors) == len(self.chat_ids):
            raise NotificationError("failed to send to all chats", channel=self.type, errors=errors)
        logger.info(f"telegram: notification sent to {len(self.chat_ids) - len(errors)} chat(s)")


class NtfyChannel(Channel):
    """POST a notification to an ntfy topic URL.

    Config keys:
        url      (required) Full ntfy topic URL, e.g. https://ntfy.sh/my-topic
        priority (optional) min / low / default / high / urgent; derived from
                 the notification when omitted
        headers  (optional) Extra HTTP headers dict (e.g. {"Authorization": "Bearer token"})
    """

    type = "ntfy"

    _PRIORITY_MAP = {
        Priority.LOW: 'low',
        Priority.NORMAL: 'default',
        Priority.HIGH: 'high',
        Priority.CRITICAL: 'urgent',
    }
    _TAGS = {
        NotificationKind.UPDATE: 'package',
        NotificationKind.ERROR: 'warning',
        NotificationKind.HEALTH: 'stethoscope',
    }

    def __init__(self, url: str, priority: Optional[str] = None,
                 headers: Optional[Dict[str, str]] = None, enabled: bool = True):
        super().__init__(enabled)
        url = (url or '').strip()
        if not url:
            raise ValueError("ntfy URL is required")
        if priority is not None and priority not in _NTFY_PRIORITIES:
            priority = 'default'
        self.url = url
        self.priority = priority
        self.headers = {str(k): str(v) for k, v in (headers or {}).items()}

    def send(self, ctx: Context, notification) -> None:
        ctx.raise_if_cancelled()
        headers: Dict[str, str] = {
            'Title': notification.subject(),
            'Priority': self.priority or self._PRIORITY_MAP[notification.priority],
            'Tags': self._TAGS[notification.kind],
            'Content-Type': 'text/plain',
        }
        headers.update(self.headers)

        try:
            response = requests.post(self.url, data=notification.text().encode('utf-8'),
                                     headers=headers, timeout=ctx.timeout_for(_REQUEST_TIMEOUT))
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(f"failed to send notification: {e}", channel=self.type) from e
        logger.info(f"ntfy: {notification.kind.value} notification sent")


class WebhookChannel(Channel):
    """POST (or PUT) a notification to a webhook URL.

    Config keys:
        url           (required) Webhook URL
        method        (optional) HTTP method: POST (default) or PUT
        headers       (optional) Dict of extra request headers
        body_template (optional) Python string.Template body.
                                 Available variables: $kind, $priority, $subject,
                                 $message, $timestamp, $count.
                                 If omitted, the notification JSON is sent.
    """

    type = "webhook"

    def __init__(self, url: str, method: str = 'POST',
                 headers: Optional[Dict[str, str]] = None,
                 body_template: Optional[str] = None, enabled: bool = True):
        super().__init__(enabled)
        url = (url or '').strip()
        if not url:
            raise ValueError("webhook URL is required")
        self.url = url
        self.method = (method or 'POST').upper()
        self.headers = {str(k): str(v) for k, v in (headers or {}).items()}
        self.body_template = body_template

    def render_body(self, notification) -> bytes:
        payload = notification.to_dict()
        if not self.body_template:
            return json.dumps(payload).encode('utf-8')
        try:
            body = string.Template(self.body_template).safe_substitute(
                kind=payload['kind'],
                priority=payload['priority'],
                subject=payload['subject'],
                message=payload['message'],
                timestamp=payload['timestamp'],
                count=payload.get('count', ''),
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"webhook: body_template substitution failed: {e}, sending raw payload")
            body = json.dumps(payload)
        return body.encode('utf-8')

    def send(self, ctx: Context, notification) -> None:
        ctx.raise_if_cancelled()
        headers: Dict[str, str] = {'Content-Type': 'application/json'}
        headers.update(self.headers)
        try:
            response = requests.request(self.method, self.url, data=self.render_body(notification),
                                        headers=headers, timeout=ctx.timeout_for(_REQUEST_TIMEOUT))
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(f"failed to send notification: {e}", channel=self.type) from e
        logger.info(f"webhook: {notification.kind.value} notification sent")


CHANNEL_TYPES = {
    EmailChannel.type: EmailChannel,
    TelegramChannel.type: TelegramChannel,
    NtfyChannel.type: NtfyChannel,
    WebhookChannel.type: WebhookChannel,
}


def build_channels(notif_cfg: Dict[str, Any]) -> List[Channel]:
    """Create the channels listed under ``notifications.channels``.

    Raises:
        ValueError: A listed channel is unknown or misses a required setting
    """
    channels: List[Channel] = []
    for name in notif_cfg.get('channels', []):
        cfg = notif_cfg.get(name) or {}
        if name == 'email':
            channels.append(EmailChannel(
                smtp_host=cfg.get('smtp_host', ''),
                smtp_port=cfg.get('smtp_port', 587),
                username=cfg.get('username'),
                password=cfg.get('password'),
                use_tls=cfg.get('use_tls', True),
                from_addr=cfg.get('from', ''),
                to_addrs=cfg.get('to', []),
                subject_prefix=cfg.get('subject_prefix'),
            ))
        elif name == 'telegram':
            channels.append(TelegramChannel(
                bot_token=cfg.get('bot_token', ''),
                chat_ids=cfg.get('chat_ids', []),
            ))
        elif name == 'ntfy':
            channels.append(NtfyChannel(
                url=cfg.get('url', ''),
                priority=cfg.get('priority'),
                headers=cfg.get('headers'),
            ))
        elif name == 'webhook':
            channels.append(WebhookChannel(
                url=cfg.get('url', ''),
                method=cfg.get('method', 'POST'),
                headers=cfg.get('headers'),
                body_template=cfg.get('body_template'),
            ))
        else:
            raise ValueError(f"unknown notification channel '{name}'")
    return channels


# ── Manager ──────────────────────────────────────────────────────

class NotificationManager:
    """Fans each notification out to every enabled channel."""

    def __init__(self, max_updates_per_notification: int = DEFAULT_MAX_UPDATES_PER_NOTIFICATION):
        self.max_updates_per_notification = max(1, max_updates_per_notification)
        self._channels: Dict[str, Channel] = {}
        self._lock = threading.Lock()

    def register_channel(self, channel: Channel) -> None:
        with self._lock:
            if channel.type in self._channels:
                raise NotificationError(f"channel type {channel.type} already registered")
            self._channels[channel.type] = channel
        logger.info(f"Registered notification channel {channel.type}")

    def unregister_channel(self, channel_type: str) -> None:
        with self._lock:
            self._channels.pop(channel_type, None)
        logger.info(f"Unregistered notification channel {channel_type}")

    def registered_channels(self) -> List[str]:
        with self._lock:
            return list(self._channels)

    def enabled_channels(self) -> List[str]:
        with self._lock:
            return [t for t, c in self._channels.items() if c.enabled]

    def send(self, ctx: Context, notification) -> None:
        """
        Deliver *notification* to every enabled channel.

        Raises:
            NotificationError: No channel is registered, or every enabled channel failed
            CancellationError: *ctx* was cancelled
        """
        with self._lock:
            channels = list(self._channels.values())
        if not channels:
            logger.warning("No notification channels registered")
            raise NotificationError("no notification channels available")

        errors: List[str] = []
        delivered = 0
        for channel in channels:
            if not channel.enabled:
                logger.debug(f"Channel {channel.type} is disabled, skipping")
                continue
            try:
                channel.send(ctx, notification)
                delivered += 1
            except NotificationError as e:
                logger.error(f"Failed to send notification via {channel.type}: {e}")
                errors.append(str(e))

        if delivered == 0 and errors:
            raise NotificationError(f"all notification channels failed: {'; '.join(errors)}",
                                    errors=errors)
        if errors:
            logger.warning(f"Some notification channels failed: {'; '.join(errors)}")

    def send_image_updates(self, ctx: Context, updates: Sequence[ImageUpdate],
                           batch_size: Optional[int] = None,
                           on_delivered: Optional[Callable[[Sequence[ImageUpdate]], None]] = None) -> int:
        """Send *updates* in batches of *batch_size* (default ``max_updates_per_notification``).

        A failed batch does not stop the later ones; *on_delivered* is called
        with each batch right after it went out.

        Returns the number of notifications delivered.

        Raises:
            NotificationError: One or more batches failed on every channel
        """
        if not updates:
            return 0
        size = batch_size or self.max_updates_per_notification
        batches = [tuple(updates[i:i + size]) for i in range(0, len(updates), size)]

        sent = 0
        failures: List[str] = []
        for batch in batches:
            try:
                self.send(ctx, UpdateBatch(updates=batch))
            except NotificationError as e:
                failures.append(str(e))
                continue
            sent += 1
            if on_delivered is not None:
                on_delivered(batch)
        if failures:
            raise NotificationError(
                f"{len(failures)} of {len(batches)} update notifications failed", errors=failures
            )
        return sent

    def send_error(self, ctx: Context, context: str, error: BaseException) -> None:
        self.send(ctx, ErrorReport(context=context, error=str(error)))

    def send_health_alert(self, ctx: Context, component: str, status: str, details: str = "") -> None:
        self.send(ctx, HealthReport(component=component, status=status, details=details))

    def health(self) -> None:
        if not self.registered_channels():
            raise NotificationError("no notification channels registered")
        if not self.enabled_channels():
            raise NotificationError("no notification channels are enabled")
