"""
Subject Resolver — maps channel metadata to a canonical SubjectId.

Different channels carry different identifying fields (Twilio `From`,
voice `callerPhone`, web `phone`, ...). Every representation of the same
phone number must resolve to a byte-identical SubjectId so a conversation
started over SMS continues over voice or web.

    resolver = PhoneSubjectResolver()
    await resolver.resolve({"From": "(415) 555-0100", "channel": "sms"})
    # → "phone_+14155550100"
"""
from __future__ import annotations

import abc
import re
import structlog
from typing import Any, Optional

from core.errors import ResolutionError
from models.schemas import SubjectId

logger = structlog.get_logger()

# Checked in order; first non-empty string wins.
PHONE_KEYS = (
    "phone",         # generic
    "from",          # Twilio SMS/Voice
    "From",          # Twilio SMS/Voice (form-encoded)
    "phoneNumber",
    "callerPhone",   # voice
    "senderPhone",   # SMS
)

_E164 = re.compile(r"^\+[1-9]\d{6,14}$")
_NON_DIGIT = re.compile(r"[^\d+]")


def extract_phone(metadata: dict[str, Any], keys: tuple[str, ...] = PHONE_KEYS) -> Optional[str]:
    for key in keys:
        value = metadata.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def normalize_phone(phone: str) -> str:
    """
    Normalize to E.164-ish form.

    Without a leading "+": 10 digits are treated as a US number, 11 digits
    starting with "1" get a "+", anything else gets a bare "+".
    """
    normalized = _NON_DIGIT.sub("", phone)
    # "+" only counts when leading
    if normalized.startswith("+"):
        normalized = "+" + normalized[1:].replace("+", "")
    else:
        normalized = normalized.replace("+", "")
        if len(normalized) == 10:
            normalized = f"+1{normalized}"
        elif len(normalized) == 11 and normalized.startswith("1"):
            normalized = f"+{normalized}"
        else:
            normalized = f"+{normalized}"

    if not _E164.match(normalized):
        logger.warning("phone_not_e164", original_phone=phone, normalized=normalized)
    return normalized


def phone_subject_id(phone: str) -> SubjectId:
    return f"phone_{normalize_phone(phone)}"


class SubjectResolver(abc.ABC):
    """Convert channel-specific metadata into a canonical SubjectId."""

    name: str = ""

    @abc.abstractmethod
    async def resolve(self, metadata: dict[str, Any]) -> SubjectId:
        """Raises ResolutionError if no identifying field is present."""
        ...

    async def close(self) -> None:
        pass


class PhoneSubjectResolver(SubjectResolver):
    """Default resolver for phone-based channels (SMS, voice, click-to-call web)."""

    name = "phone"

    async def resolve(self, metadata: dict[str, Any]) -> SubjectId:
        phone = extract_phone(metadata)
        if not phone:
            logger.error("subject_resolution_failed",
                         resolver=self.name, keys=sorted(metadata.keys()))
            raise ResolutionError("No valid phone number found in metadata for phone-based subject resolution")

        subject_id = phone_subject_id(phone)
        logger.debug("subject_resolved",
                     resolver=self.name, subject_id=subject_id,
                     channel=metadata.get("channel"))
        return subject_id
