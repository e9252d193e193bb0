"""
Outbound notifications.

- Notifier: generic fan-out to sinks (logging, webhooks); a failing sink
  never affects a job
- CallbackSender: the single job-completion callback, optionally signed
"""

import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import logging

import httpx

from leadsync.config import settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-LeadSync-Signature"


def sign_payload(body: bytes, secret: str) -> str:
    """'sha256=<hex hmac>' over the exact request body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def encode_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, default=str, sort_keys=True).encode("utf-8")


class NotificationSink(ABC):
    name = "base"

    @abstractmethod
    async def notify(self, event_name: str, payload: Dict[str, Any]) -> None:
        pass


class LoggingSink(NotificationSink):
    name = "logging"

    async def notify(self, event_name: str, payload: Dict[str, Any]) -> None:
        logger.info(f"📣 {event_name}: {json.dumps(payload, default=str)[:500]}")


class WebhookSink(NotificationSink):
    """POST every notification as JSON to a fixed URL."""

    name = "webhook"

    def __init__(self, url: str, secret: Optional[str] = None,
                 timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.transport = transport

    async def notify(self, event_name: str, payload: Dict[str, Any]) -> None:
        body = encode_payload({"event": event_name, "payload": payload})
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, self.secret)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.url, content=body, headers=headers)
            response.raise_for_status()


class Notifier:
    """Fan-out to every registered sink."""

    def __init__(self, sinks: Optional[List[NotificationSink]] = None):
        self.sinks = sinks if sinks is not None else [LoggingSink()]

    async def publish(self, event_name: str, payload: Dict[str, Any]) -> int:
        """Returns how many sinks accepted the notification."""
        delivered = 0
        for sink in self.sinks:
            try:
                await sink.notify(event_name, payload)
                delivered += 1
            except Exception as e:
                logger.warning(f"⚠️ Notification sink {sink.name} failed for {event_name}: {e}")
        return delivered


class CallbackSender:
    """POST the job result to the caller-supplied URL."""

    def __init__(
        self,
        secret: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret = secret if secret is not None else settings.CALLBACK_SIGNING_SECRET
        self.timeout = timeout or settings.CALLBACK_TIMEOUT_SECONDS
        self.transport = transport

    async def send(self, url: str, payload: Dict[str, Any]) -> bool:
        """
        Deliver once; failures are logged, never raised.

        Returns:
            True when the receiver answered 2xx
        """
        body = encode_payload(payload)
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, self.secret)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, content=body, headers=headers)
            if response.is_success:
                logger.info(f"✅ Callback delivered to {url} ({response.status_code})")
                return True
            logger.warning(f"⚠️ Callback to {url} answered {response.status_code}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"❌ Callback to {url} failed: {e}")
            return False


def build_notifier(webhook_url: Optional[str] = None, secret: Optional[str] = None) -> Notifier:
    """Logging always; a webhook sink when a URL is configured."""
    webhook_url = webhook_url if webhook_url is not None else settings.NOTIFY_WEBHOOK_URL
    secret = secret if secret is not None else settings.CALLBACK_SIGNING_SECRET
    sinks: List[NotificationSink] = [LoggingSink()]
    if webhook_url:
        sinks.append(WebhookSink(webhook_url, secret=secret, timeout=settings.CALLBACK_TIMEOUT_SECONDS))
        logger.info(f"Notifications also go to {webhook_url}")
    return Notifier(sinks)
