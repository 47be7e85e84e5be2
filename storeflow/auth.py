"""One-time code login restricted to the organization's email domain.

Codes are not delivered anywhere; the fixed development code is written to
the log instead. This is a convenience gate for a single office, not a
security boundary.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Dict, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from .storage import LocalStore

logger = logging.getLogger(__name__)

CURRENT_USER_KEY = "currentUser"


class LoginError(ValueError):
    """Raised when an email or code is rejected."""

    def __init__(self, message: str, *, retry_after: Optional[int] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


@dataclass
class Challenge:
    email: str
    code_hash: str
    issued_at: float


def _normalize_email(email: Any) -> str:
    return str(email or "").strip().lower()


class LoginManager:
    """Issues and checks login codes and remembers who is signed in."""

    def __init__(
        self,
        storage: LocalStore,
        *,
        allowed_domain: str = "@cavitak.com",
        verification_code: str = "123456",
        resend_cooldown: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.storage = storage
        self.allowed_domain = allowed_domain.lower()
        self.verification_code = verification_code
        self.resend_cooldown = resend_cooldown
        self._clock = clock
        self._challenges: Dict[str, Challenge] = {}
        self._lock = RLock()

    def current_user(self) -> Optional[str]:
        user = self.storage.get(CURRENT_USER_KEY)
        return user if isinstance(user, str) and user else None

    def validate_email(self, email: Optional[str]) -> str:
        normalized = _normalize_email(email)
        if not normalized:
            raise LoginError("Please enter your email address.")
        if not normalized.endswith(self.allowed_domain) or normalized == self.allowed_domain:
            raise LoginError(
                f"Access Denied. Only {self.allowed_domain} email addresses are allowed."
            )
        return normalized

    def request_code(self, email: Optional[str]) -> int:
        """Issue a code for ``email`` and return the seconds until a resend is allowed."""

        normalized = self.validate_email(email)
        with self._lock:
            now = self._clock()
            existing = self._challenges.get(normalized)
            if existing is not None:
                remaining = self.resend_cooldown - (now - existing.issued_at)
                if remaining > 0:
                    wait = math.ceil(remaining)
                    raise LoginError(f"Resend code in {wait}s", retry_after=wait)
            self._challenges[normalized] = Challenge(
                email=normalized,
                code_hash=generate_password_hash(self.verification_code),
                issued_at=now,
            )
        logger.info("[DEV MODE] OTP for %s is %s", normalized, self.verification_code)
        return self.resend_cooldown

    def verify(self, email: Optional[str], code: Optional[str]) -> str:
        normalized = self.validate_email(email)
        with self._lock:
            challenge = self._challenges.get(normalized)
            if challenge is None:
                raise LoginError("Request a code before verifying.")
            if not check_password_hash(challenge.code_hash, str(code or "").strip()):
                logger.warning("Rejected login code for %s", normalized)
                raise LoginError("Invalid OTP code. Please try again.")
            del self._challenges[normalized]
            self.storage.set(CURRENT_USER_KEY, normalized)
        logger.info("User %s signed in", normalized)
        return normalized

    def logout(self) -> None:
        user = self.current_user()
        self.storage.remove(CURRENT_USER_KEY)
        if user:
            logger.info("User %s signed out", user)


__all__ = ["CURRENT_USER_KEY", "Challenge", "LoginError", "LoginManager"]
