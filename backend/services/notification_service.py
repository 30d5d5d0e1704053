# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Notification Service

Sends schedule notification emails through the Resend HTTP API.

Features:
- Receiver fallback: invalid/missing address -> user's email -> email on file
- Instance-scoped rate limiter (minimum spacing between sends)
- Exponential backoff retry on provider rate-limit responses only
- No-op with a warning when no API key is configured (local development)
"""

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from config import settings
from core.exceptions import NotificationError
from db.database import SessionLocal
from models.account import User

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

TIMEOUT_EMAIL = httpx.Timeout(
    connect=10.0,
    read=30.0,
    write=10.0,
    pool=10.0
)


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and bool(EMAIL_PATTERN.match(email))


class EmailRateLimiter:
    """
    Enforces a minimum interval between consecutive sends.

    Each instance owns its last-send timestamp; construct one per process
    (or per test) and hand it to the NotificationService.
    """

    def __init__(
        self,
        min_interval_ms: int = 500,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.min_interval_ms = min_interval_ms
        self._clock = clock
        self._sleep = sleep
        self._last_sent_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def last_sent_at(self) -> Optional[float]:
        return self._last_sent_at

    async def wait(self) -> float:
        """
        Block until the next send is allowed, then claim the slot.

        Returns:
            Seconds waited
        """
        async with self._lock:
            waited = 0.0
            if self._last_sent_at is not None:
                elapsed_ms = (self._clock() - self._last_sent_at) * 1000
                if elapsed_ms < self.min_interval_ms:
                    waited = (self.min_interval_ms - elapsed_ms) / 1000
                    logger.debug(f"Rate limiting: waiting {waited * 1000:.0f}ms before sending next email")
                    await self._sleep(waited)
            self._last_sent_at = self._clock()
            return waited


def is_rate_limit_error(status_code: Optional[int], error: Dict[str, Any]) -> bool:
    """Provider rate limiting: HTTP 429 or a rate/limit error body."""
    if status_code == 429:
        return True
    name = str(error.get("name", "")).lower()
    message = str(error.get("message", "")).lower()
    return name == "rate_limit_exceeded" or "rate" in message or "limit" in message


class NotificationService:
    """Email delivery for schedule notifications."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        max_retries: int = 3,
        base_delay_ms: int = 500,
        rate_limiter: Optional[EmailRateLimiter] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """
        Initialize notification service.

        Args:
            api_key: Resend API key (None disables delivery)
            sender: Default From address
            max_retries: Total send attempts on rate-limit errors
            base_delay_ms: Initial backoff delay, doubled per retry
            rate_limiter: Shared spacing limiter (a private one is created when omitted)
            session_factory: Database session factory for email-on-file lookup
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Sleep function used between retries
        """
        self.api_key = api_key
        self.sender = sender
        self.max_retries = max(1, max_retries)
        self.base_delay_ms = base_delay_ms
        self.rate_limiter = rate_limiter or EmailRateLimiter()
        self.session_factory = session_factory
        self.transport = transport
        self._sleep = sleep

    async def send_email(
        self,
        to: Optional[str],
        subject: str,
        html: str,
        user: Optional[Any] = None,
        sender: Optional[str] = None
    ) -> bool:
        """
        Send one email.

        Args:
            to: Receiver address (falls back to the user's address when invalid/missing)
            subject: Email subject
            html: HTML body
            user: Account the email concerns (object with uid/email)
            sender: Override From address

        Returns:
            True when the provider accepted the email, False when delivery is disabled

        Raises:
            NotificationError: No sender/receiver, or delivery failed after retries
        """
        started = time.time()
        sender = sender or self.sender
        if not sender:
            raise NotificationError("Email sender is not configured")

        receiver = to
        if receiver and not is_valid_email(receiver):
            logger.warning(f"Invalid email address provided: {receiver}, falling back to user email")
            receiver = getattr(user, "email", None)

        if not receiver and user is not None:
            receiver = getattr(user, "email", None)

        if not receiver and getattr(user, "uid", None):
            receiver = self._lookup_email(user.uid)

        if not receiver:
            raise NotificationError("No valid receiver email specified")

        if not self.api_key:
            logger.warning(f"Email delivery disabled (no API key); skipping '{subject}' to {receiver}")
            return False

        logger.info(f"Prepare to send email to {receiver}")

        await self._send_with_retry({
            "from": sender,
            "to": receiver,
            "subject": subject,
            "html": html,
        })

        logger.info(
            f"Email sent successfully to {receiver} in {(time.time() - started) * 1000:.0f}ms"
        )
        return True

    def _lookup_email(self, uid: str) -> Optional[str]:
        db: Session = self.session_factory()
        try:
            return db.query(User.email).filter(User.uid == uid).scalar()
        finally:
            db.close()

    async def _send_with_retry(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        last_error: Optional[NotificationError] = None

        for attempt in range(1, self.max_retries + 1):
            await self.rate_limiter.wait()
            try:
                return await self._post(payload)
            except NotificationError as e:
                last_error = e
                if not e.retryable:
                    raise

                if attempt < self.max_retries:
                    delay = self.base_delay_ms * (2 ** (attempt - 1)) / 1000
                    logger.warning(
                        f"Rate limit error detected. Retrying in {delay:.1f}s "
                        f"(attempt {attempt}/{self.max_retries}): {e.message}"
                    )
                    await self._sleep(delay)

        logger.error(f"Failed to send email after {self.max_retries} attempts: {last_error.message}")
        raise NotificationError(
            f"Failed to send email: {last_error.message}",
            retryable=False,
            detail=last_error.detail
        )

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

        try:
            async with httpx.AsyncClient(timeout=TIMEOUT_EMAIL, transport=self.transport) as client:
                response = await client.post(RESEND_API_URL, json=payload, headers=headers)
        except (httpx.RequestError, httpx.TimeoutException) as e:
            raise NotificationError(f"Email provider unreachable: {type(e).__name__}") from e

        if response.is_success:
            return response.json() if response.content else {}

        try:
            error = response.json()
        except ValueError:
            error = {"message": response.text}

        raise NotificationError(
            str(error.get("message") or f"HTTP {response.status_code}"),
            retryable=is_rate_limit_error(response.status_code, error),
            detail={"status_code": response.status_code, "name": error.get("name")}
        )


# Global notification service
_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """Get or create the global notification service (one rate limiter per process)."""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService(
            api_key=settings.resend_api_key,
            sender=settings.email_sender,
            max_retries=settings.email_max_retries,
            base_delay_ms=settings.email_base_delay_ms,
            rate_limiter=EmailRateLimiter(min_interval_ms=settings.email_min_interval_ms),
        )
    return _notification_service
