"""Phone number canonicalization.

Every number that reaches the mapping or shadow stores goes through
``PhoneNormalizer.normalize`` so equality on the stored string is equality
of the underlying number.
"""

import logging

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

from cellsync.core.config import settings

logger = logging.getLogger(__name__)


class PhoneNormalizer:
    """Parse loosely formatted phone strings into E.164."""

    def __init__(self, default_country: str | None = None) -> None:
        self.default_country = (default_country or settings.DEFAULT_COUNTRY).upper()

    def normalize(self, raw: str | None, country: str | None = None) -> str | None:
        """Return the E.164 form of ``raw``, or None if it is not a phone number.

        Args:
            raw: Phone string as entered at the provider.
            country: ISO 3166 region used for numbers without a country code.
        """
        if raw is None:
            return None
        text = str(raw).strip()
        if not text:
            return None

        region = (country or self.default_country).upper()
        try:
            parsed = phonenumbers.parse(text, region)
        except NumberParseException:
            logger.debug("Unparseable phone number", extra={"region": region})
            return None

        if not phonenumbers.is_possible_number(parsed):
            return None
        return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)

    def country_for_number(self, number: str | None) -> str:
        """Region of an E.164 number, falling back to the default region."""
        if not number:
            return self.default_country
        try:
            parsed = phonenumbers.parse(str(number).strip(), None)
        except NumberParseException:
            return self.default_country
        return phonenumbers.region_code_for_number(parsed) or self.default_country


_normalizer: PhoneNormalizer | None = None


def get_phone_normalizer() -> PhoneNormalizer:
    """Get the shared PhoneNormalizer instance."""
    global _normalizer
    if _normalizer is None:
        _normalizer = PhoneNormalizer()
    return _normalizer
