import os
import re
import smtplib
import time
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Callable, Optional

from .errors import (
    Conflict,
    Forbidden,
    NotFound,
    NotificationFailed,
    ValidationError,
)
from .ids import generate_secret
from .logs import get_logger, sanitize_log_value
from .models import APIKey
from .ratelimit import RateLimiter, ip_subject
from .storage import IdentifierTaken, MetadataStore


logger = get_logger("keys")

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_NAME_LENGTH = 100
VERIFY_TOKEN_LENGTH = 64


class Notifier(ABC):
    @abstractmethod
    def send_verification(self, email: str, token: str) -> None:
        """Deliver a verification token to ``email``."""


class LoggingNotifier(Notifier):
    """Records verification tokens in the log instead of sending mail."""

    def __init__(self, base_url: str = "") -> None:
        self.base_url = base_url

    def send_verification(self, email: str, token: str) -> None:
        logger.info(
            "verification_pending email=%s url=%s/keys/verify/%s",
            sanitize_log_value(email),
            self.base_url,
            token,
        )


class SMTPNotifier(Notifier):
    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.base_url = base_url
        self.username = username
        self.password = password
        self.use_tls = use_tls

    @classmethod
    def from_env(cls, base_url: str) -> Optional["SMTPNotifier"]:
        host = os.environ.get("PASTEHOST_SMTP_HOST")
        if not host:
            return None
        try:
            port = int(os.environ.get("PASTEHOST_SMTP_PORT", "587"))
        except ValueError:
            port = 587
        return cls(
            host=host,
            port=port,
            sender=os.environ.get("PASTEHOST_SMTP_FROM", "noreply@localhost"),
            base_url=base_url,
            username=os.environ.get("PASTEHOST_SMTP_USERNAME") or None,
            password=os.environ.get("PASTEHOST_SMTP_PASSWORD") or None,
            use_tls=os.environ.get("PASTEHOST_SMTP_TLS", "true").strip().lower()
            in {"1", "true", "yes", "on"},
        )

    def send_verification(self, email: str, token: str) -> None:
        message = EmailMessage()
        message["Subject"] = "Verify your API key"
        message["From"] = self.sender
        message["To"] = email
        message.set_content(
            "Open the link below to activate your API key:\n\n"
            f"{self.base_url}/keys/verify/{token}\n\n"
            "The link expires in 24 hours.\n"
        )
        with smtplib.SMTP(self.host, self.port, timeout=30) as client:
            if self.use_tls:
                client.starttls()
            if self.username and self.password:
                client.login(self.username, self.password)
            client.send_message(message)


class APIKeyService:
    def __init__(
        self,
        store: MetadataStore,
        notifier: Notifier,
        limiter: RateLimiter,
        *,
        clock: Callable[[], float] = time.time,
        token_ttl_hours: float = 24.0,
        key_length: int = 48,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.limiter = limiter
        self.clock = clock
        self.token_ttl_seconds = token_ttl_hours * 3600
        self.key_length = key_length

    def request_key(self, email: str, name: str, ip: str) -> APIKey:
        self.limiter.allow(ip_subject("api_key_request", ip))

        email = (email or "").strip() if isinstance(email, str) else ""
        name = (name or "").strip() if isinstance(name, str) else ""
        if not _EMAIL_PATTERN.match(email):
            raise ValidationError("A valid email address is required")
        if not name or len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"name is required and must be at most {MAX_NAME_LENGTH} characters")

        if self.store.find_verified_key_by_email(email) is not None:
            raise Conflict("An API key already exists for this email address")

        now = self.clock()
        api_key = APIKey(
            key="",
            email=email,
            name=name,
            verified=False,
            verify_token=generate_secret(VERIFY_TOKEN_LENGTH),
            verify_expiry=now + self.token_ttl_seconds,
            created_at=now,
        )
        for _ in range(5):
            api_key.key = generate_secret(self.key_length)
            try:
                self.store.insert_api_key(api_key)
                break
            except IdentifierTaken:
                continue
        else:
            raise Conflict("Could not allocate a unique API key")

        try:
            self.notifier.send_verification(email, api_key.verify_token)
        except Exception as error:
            logger.error(
                "verification_send_failed email=%s error=%s",
                sanitize_log_value(email),
                error,
            )
            self.store.delete_api_key(api_key.key)
            raise NotificationFailed("Failed to send verification email") from error

        logger.info("api_key_requested email=%s", sanitize_log_value(email))
        return api_key

    def verify(self, token: str) -> APIKey:
        if not token:
            raise NotFound("Invalid or expired verification token")
        api_key = self.store.find_pending_key_by_token(token, self.clock())
        if api_key is None or not self.store.mark_key_verified(api_key.key, token):
            raise NotFound("Invalid or expired verification token")
        api_key.verified = True
        api_key.verify_token = None
        api_key.verify_expiry = None
        logger.info("api_key_verified email=%s", sanitize_log_value(api_key.email))
        return api_key

    def authenticate(self, raw_key: Optional[str]) -> Optional[APIKey]:
        """Resolve a presented credential. ``None`` means anonymous."""

        if not raw_key:
            return None
        api_key = self.store.get_api_key(raw_key)
        if api_key is None:
            raise Forbidden("Invalid API key")
        if not api_key.verified:
            raise Forbidden("API key has not been verified")
        return api_key
