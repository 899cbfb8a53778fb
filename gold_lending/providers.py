"""
Notification Provider Module

Delivery backends for outbound customer and administrator messages. The
provider is chosen once from configuration; callers go through `dispatch`,
which turns delivery failures into a failed DispatchResult so that a lost
message never undoes the accounting change that triggered it.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from .config import LendingConfig
from .exceptions import ExternalDependencyFailure


logger = logging.getLogger("gold_lending.providers")


@dataclass
class OutboundMessage:
    """Fully formed message handed to a provider"""
    subject: str
    body: str
    recipient_name: str = ""
    recipient_email: Optional[str] = None
    recipient_mobile: Optional[str] = None
    category: str = "general"
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchResult:
    """Outcome of one delivery attempt"""
    provider: str
    success: bool
    category: str = "general"
    message_id: Optional[str] = None
    error: Optional[str] = None
    dispatched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'provider': self.provider,
            'success': self.success,
            'category': self.category,
            'message_id': self.message_id,
            'error': self.error,
            'dispatched_at': self.dispatched_at.isoformat(),
        }


class NotificationProvider(ABC):
    """Delivery backend for outbound messages"""

    name = "provider"

    @abstractmethod
    def send(self, message: OutboundMessage) -> DispatchResult:
        """
        Deliver a message

        Raises:
            ExternalDependencyFailure: If the backend cannot deliver it
        """
        pass


class LogNotificationProvider(NotificationProvider):
    """Writes messages to the log instead of delivering them"""

    name = "log"

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logging.getLogger("gold_lending.providers.outbox")

    def send(self, message: OutboundMessage) -> DispatchResult:
        recipient = message.recipient_email or message.recipient_mobile or message.recipient_name
        self.log.info(f"[{message.category}] to {recipient}: {message.subject} | {message.body[:100]}")
        return DispatchResult(provider=self.name, success=True, category=message.category)


class WebhookNotificationProvider(NotificationProvider):
    """POSTs each message as JSON to a configured endpoint"""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def send(self, message: OutboundMessage) -> DispatchResult:
        payload = {
            "category": message.category,
            "subject": message.subject,
            "body": message.body,
            "recipient": {
                "name": message.recipient_name,
                "email": message.recipient_email,
                "mobile": message.recipient_mobile,
            },
            "metadata": message.metadata,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ExternalDependencyFailure(
                f"Webhook delivery failed: {e}", {"url": self.url, "category": message.category}
            )
        return DispatchResult(provider=self.name, success=True, category=message.category)


class BrevoEmailProvider(NotificationProvider):
    """Transactional email through the Brevo SMTP API"""

    name = "brevo"

    def __init__(
        self,
        api_key: str,
        sender_email: str,
        sender_name: str,
        api_url: str = "https://api.brevo.com/v3/smtp/email",
        timeout: float = 10.0
    ):
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.api_url = api_url
        self.timeout = timeout

    def send(self, message: OutboundMessage) -> DispatchResult:
        if not message.recipient_email:
            raise ExternalDependencyFailure(
                "No recipient email address", {"category": message.category}
            )

        payload = {
            "sender": {"name": self.sender_name, "email": self.sender_email},
            "to": [{"email": message.recipient_email, "name": message.recipient_name}],
            "subject": message.subject,
            "htmlContent": message.body.replace("\n", "<br/>"),
        }
        try:
            response = requests.post(
                self.api_url,
                json=payload,
                timeout=self.timeout,
                headers={
                    "accept": "application/json",
                    "content-type": "application/json",
                    "api-key": self.api_key,
                }
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ExternalDependencyFailure(
                f"Brevo email delivery failed: {e}", {"category": message.category}
            )

        try:
            message_id = response.json().get("messageId")
        except ValueError:
            message_id = None
        return DispatchResult(
            provider=self.name, success=True, category=message.category, message_id=message_id
        )


def dispatch(provider: NotificationProvider, message: OutboundMessage) -> DispatchResult:
    """Send through a provider, turning delivery failures into a failed result"""
    try:
        result = provider.send(message)
    except ExternalDependencyFailure as e:
        logger.warning(f"Dispatch of {message.category} via {provider.name} failed: {e}")
        return DispatchResult(
            provider=provider.name, success=False, category=message.category, error=str(e)
        )
    if not result.success:
        logger.warning(f"Dispatch of {message.category} via {provider.name} failed: {result.error}")
    return result


def build_notification_provider(config: LendingConfig) -> NotificationProvider:
    """Select the provider named in configuration"""
    name = config.notification_provider.lower()
    if name == "log":
        return LogNotificationProvider()
    if name == "webhook":
        if not config.notification_webhook_url:
            raise ValueError("notification_webhook_url is required for the webhook provider")
        return WebhookNotificationProvider(
            config.notification_webhook_url, timeout=config.notification_timeout
        )
    if name == "brevo":
        if not config.brevo_api_key:
            raise ValueError("brevo_api_key is required for the brevo provider")
        return BrevoEmailProvider(
            api_key=config.brevo_api_key,
            sender_email=config.brevo_sender_email,
            sender_name=config.brevo_sender_name,
            api_url=config.brevo_api_url,
            timeout=config.notification_timeout,
        )
    raise ValueError(f"Unknown notification provider: {config.notification_provider}")
