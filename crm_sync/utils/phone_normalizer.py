"""
Phone Number Normalization

Contacts arrive from the platform with phones in whatever format the user
typed. Stored phones are E.164 so lookups by phone match across sources.
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

from crm_sync.config import get_settings
from crm_sync.utils.observability import logger


@dataclass
class NormalizedPhone:
    """Result of phone normalization."""
    original: str
    e164: str
    country_code: str
    region: str
    is_mobile: bool


class PhoneNormalizationError(Exception):
    """Raised when a phone number cannot be normalized."""
    pass


class PhoneNormalizer:
    """
    Normalizes phone numbers to E.164.

    Numbers without a leading `+` are parsed in `default_region`
    (settings.default_phone_region unless given).
    """

    def __init__(self, default_region: Optional[str] = None):
        self.default_region = default_region or get_settings().default_phone_region

    def normalize(self, phone: str, region: Optional[str] = None) -> NormalizedPhone:
        """
        Raises:
            PhoneNormalizationError: If the number is unparseable or invalid
        """
        original = phone
        cleaned = self._clean_input(phone)
        if not cleaned or cleaned == "+":
            raise PhoneNormalizationError(f"Empty phone number: {original!r}")

        try:
            parsed = phonenumbers.parse(cleaned, region or self.default_region)
        except NumberParseException as e:
            raise PhoneNormalizationError(f"Cannot parse phone number '{original}': {e}") from e

        if not phonenumbers.is_valid_number(parsed):
            raise PhoneNormalizationError(f"Invalid phone number: {original}")

        number_type = phonenumbers.number_type(parsed)
        return NormalizedPhone(
            original=original,
            e164=phonenumbers.format_number(parsed, PhoneNumberFormat.E164),
            country_code=str(parsed.country_code),
            region=phonenumbers.region_code_for_number(parsed) or (region or self.default_region),
            is_mobile=number_type in (
                phonenumbers.PhoneNumberType.MOBILE,
                phonenumbers.PhoneNumberType.FIXED_LINE_OR_MOBILE,
            ),
        )

    def normalize_or_keep(self, phone: Optional[str], region: Optional[str] = None) -> Optional[str]:
        """E.164 when possible, otherwise the input unchanged."""
        if not phone:
            return phone
        try:
            return self.normalize(phone, region).e164
        except PhoneNormalizationError as e:
            logger.debug(f"Keeping phone as received: {e}")
            return phone

    def _clean_input(self, phone: str) -> str:
        """Remove formatting characters, keeping a leading +."""
        phone = phone.strip()
        digits = "".join(c for c in phone if c.isdigit())
        return f"+{digits}" if phone.startswith("+") else digits


@lru_cache
def get_phone_normalizer() -> PhoneNormalizer:
    return PhoneNormalizer()
