# dupkite/verification.py
# Token-hash verification of reports (only when REQUIRE_VERIFICATION is on)

import hashlib
import secrets
from typing import Optional
from urllib.parse import urlencode

from .database import ReportStore
from .errors import InvalidToken
from .logging_config import get_logger

logger = get_logger(__name__)

MSG_MISSING_TOKEN = "Липсва токен."


def hash_value(value: str) -> str:
    """One-way hash for emails and verification tokens; plaintext is never stored"""
    return hashlib.sha256(value.strip().lower().encode("utf-8")).hexdigest()


def generate_token() -> str:
    return secrets.token_hex(32)


def verification_link(base_url: str, token: str) -> str:
    return f"{base_url}?{urlencode({'token': token})}"


class VerificationNotifier:
    """Delivers the plaintext token to the submitter"""

    async def send(self, report_id: str, email: str, link: str) -> None:
        raise NotImplementedError


class LoggingNotifier(VerificationNotifier):
    """Writes the link to the application log; stands in until mail delivery is wired"""

    async def send(self, report_id: str, email: str, link: str) -> None:
        logger.info(f"Verification link issued: {link}", extra={"report_id": report_id})


async def verify(store: ReportStore, token: Optional[str]) -> str:
    """Flip the report owning this token to visible; tokens are single-use

    Returns the verified report id, raises InvalidToken otherwise.
    """
    token = (token or "").strip()
    if not token:
        raise InvalidToken(MSG_MISSING_TOKEN)

    report_id = await store.consume_verification_token(hash_value(token))
    if report_id is None:
        logger.info("Verification token did not match any report")
        raise InvalidToken()

    logger.info("Report verified", extra={"report_id": report_id})
    return report_id
