"""Notification delivery over independently enabled SMS and email channels."""

from __future__ import annotations

import html
import http.client
import json
import logging
import os
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from core.exceptions import NotificationError

logger = logging.getLogger(__name__)

SMS_MAX_LENGTH = 115


class Channel(Enum):
    SMS = "sms"
    EMAIL = "email"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


@dataclass
class ChannelConfig:
    enabled: bool
    transport: str = "log"  # "webhook" or "log"
    webhook_url: Optional[str] = None
    recipient: str = ""
    sender: str = ""
    timeout: float = 5.0


@dataclass
class DeliveryReport:
    delivered: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def truncate_sms(message: str, limit: int = SMS_MAX_LENGTH) -> str:
    return message[:limit]


def render_email(subject: str, body: str, ts: Optional[datetime] = None) -> str:
    ts = ts or datetime.now(timezone.utc)
    return (
        f"<h2>{html.escape(subject)}</h2><p>{html.escape(body)}</p>"
        f"<p><strong>Timestamp:</strong> {ts.isoformat()}</p>"
    )


class LogTransport:
    """Dry-run transport: the message is only written to the log."""

    def send(self, channel: Channel, config: ChannelConfig, subject: str, body: str) -> None:
        logger.info("[NOTIFY:%s] %s - %s", channel.value.upper(), subject, body)


class WebhookTransport:
    """POSTs a JSON payload to the channel's webhook (SMS or mail relay)."""

    def send(self, channel: Channel, config: ChannelConfig, subject: str, body: str) -> None:
        if not config.webhook_url:
            raise NotificationError(channel.value, "no webhook URL configured")

        payload = self._build_payload(channel, config, subject, body)
        try:
            request = urllib.request.Request(
                config.webhook_url,
                data=json.dumps(payload).encode("utf-8"),
                headers={"Content-Type": "application/json"},
            )
            with urllib.request.urlopen(request, timeout=config.timeout) as response:
                if response.status >= 400:
                    detail = response.read().decode("utf-8", errors="ignore")
                    raise NotificationError(channel.value, f"HTTP {response.status}: {detail}")
        except (urllib.error.URLError, urllib.error.HTTPError, socket.timeout) as exc:
            raise NotificationError(channel.value, str(exc)) from exc
        except (OSError, ValueError, http.client.HTTPException) as exc:
            # connection resets, dropped sockets, malformed webhook URLs
            raise NotificationError(channel.value, f"{type(exc).__name__}: {exc}") from exc

    @staticmethod
    def _build_payload(channel: Channel, config: ChannelConfig, subject: str, body: str) -> Dict[str, Any]:
        if channel is Channel.SMS:
            return {"to": config.recipient, "from": config.sender, "body": body}
        return {
            "to": config.recipient,
            "from": config.sender,
            "subject": subject,
            "html": render_email(subject, body),
        }


_TRANSPORTS = {
    "log": LogTransport,
    "webhook": WebhookTransport,
}


class NotificationService:
    """
    Fan a message out to every enabled channel.

    Each channel is attempted on its own: a failure on SMS does not stop the
    email attempt, and no failure propagates out of ``notify``.
    """

    def __init__(
        self,
        channels: Dict[Channel, ChannelConfig],
        transports: Optional[Dict[Channel, Any]] = None,
        metrics=None,
    ) -> None:
        self._channels = dict(channels)
        self._transports: Dict[Channel, Any] = {}
        for channel, config in self._channels.items():
            if transports and channel in transports:
                self._transports[channel] = transports[channel]
                continue
            transport_cls = _TRANSPORTS.get(config.transport)
            if transport_cls is None:
                raise ValueError(f"Unsupported notification transport: {config.transport}")
            self._transports[channel] = transport_cls()
        self.metrics = metrics

        enabled = [c.value for c in self.enabled_channels()]
        logger.info(f"Initialized NotificationService (enabled={enabled or 'none'})")

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]], metrics=None) -> "NotificationService":
        raw_config = raw_config or {}
        channels: Dict[Channel, ChannelConfig] = {}
        for channel in Channel:
            section = raw_config.get(channel.value) or {}
            webhook_url = section.get("webhook_url")
            if webhook_url and "${" in webhook_url:
                webhook_url = os.path.expandvars(webhook_url)
            if not webhook_url and section.get("webhook_env"):
                webhook_url = os.getenv(section["webhook_env"], "")
            channels[channel] = ChannelConfig(
                enabled=bool(section.get("enabled", False)),
                transport=str(section.get("transport", "log")),
                webhook_url=webhook_url or None,
                recipient=str(section.get("recipient", "")),
                sender=str(section.get("sender", "")),
                timeout=float(section.get("timeout_seconds", 5.0)),
            )
        return cls(channels, metrics=metrics)

    def enabled_channels(self) -> List[Channel]:
        return [c for c in Channel if c in self._channels and self._channels[c].enabled]

    def deliver(self, channel: Channel, subject: str, body: str) -> None:
        """
        Send one message on one channel.

        Raises:
            NotificationError: transport failure
        """
        config = self._channels[channel]
        if channel is Channel.SMS:
            body = truncate_sms(body)
        self._transports[channel].send(channel, config, subject, body)

    def notify(self, subject: str, body: str) -> DeliveryReport:
        report = DeliveryReport()
        for channel in self.enabled_channels():
            try:
                self.deliver(channel, subject, body)
                report.delivered.append(channel.value)
            except NotificationError as exc:
                logger.error("Failed to deliver '%s' via %s: %s", subject, channel.value, exc.cause)
                self._record_failure(report, channel, str(exc.cause))
            except Exception as exc:
                logger.error(
                    "Unexpected error delivering '%s' via %s: %s", subject, channel.value, exc, exc_info=True
                )
                self._record_failure(report, channel, f"{type(exc).__name__}: {exc}")
        return report

    def _record_failure(self, report: DeliveryReport, channel: Channel, cause: str) -> None:
        report.failed[channel.value] = cause
        if self.metrics is not None:
            self.metrics.record_delivery_failure(channel.value)

    def notify_action(self, description: str) -> DeliveryReport:
        return self.notify("Portfolio Action", description)


__all__ = [
    "Channel",
    "ChannelConfig",
    "DeliveryReport",
    "LogTransport",
    "NotificationService",
    "SMS_MAX_LENGTH",
    "WebhookTransport",
    "render_email",
    "truncate_sms",
]
