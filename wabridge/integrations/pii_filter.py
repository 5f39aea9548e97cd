"""wabridge – PII masking for log safety.

Regex-based detection and masking of phone numbers, WhatsApp identities and
e-mail addresses. Applied to log records, NOT to actual message content.
"""

import re
from typing import Any

PATTERNS: dict[str, re.Pattern[str]] = {
    "jid": re.compile(r"\b(\d{5,20})(?::\d+)?@(s\.whatsapp\.net|lid|c\.us)\b"),
    "phone_intl": re.compile(r"\+\d{1,3}\s?\d{3,14}"),
    "email": re.compile(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}"),
}

# Keys whose values are identities and are masked even without a pattern hit.
IDENTITY_KEYS = frozenset({"to", "identity", "sender", "customer_jid"})


class PIIFilter:
    """PII detection and masking.

    Usage:
        pii = PIIFilter()
        safe_text = pii.mask(text)  # For logging only
    """

    def __init__(self, patterns: dict[str, re.Pattern[str]] | None = None) -> None:
        self._patterns = patterns or PATTERNS

    def contains_pii(self, text: str) -> bool:
        return any(p.search(text) for p in self._patterns.values())

    def mask(self, text: str) -> str:
        """Mask all PII in text.

        - JID: 6281234567890@s.whatsapp.net → 62812****@s.whatsapp.net
        - Phone: +6281234567 → +6281****
        - Email: user@example.com → u****@e****.com
        """

        def mask_jid(match: re.Match[str]) -> str:
            user, server = match.group(1), match.group(2)
            return f"{user[:5]}****@{server}"

        def mask_phone(match: re.Match[str]) -> str:
            full = match.group(0)
            return full[:5] + "****" if len(full) > 5 else "****"

        def mask_email(match: re.Match[str]) -> str:
            local, _, domain = match.group(0).partition("@")
            name, _, tld = domain.rpartition(".")
            return f"{local[:1]}****@{name[:1]}****.{tld or 'com'}"

        result = self._patterns["jid"].sub(mask_jid, text)
        result = self._patterns["phone_intl"].sub(mask_phone, result)
        # JIDs were already masked and carry no TLD, so they are not e-mails.
        result = self._patterns["email"].sub(mask_email, result)
        return result


_default_filter = PIIFilter()


def filter_log_record(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: mask PII in every string value of the record."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        masked = _default_filter.mask(value)
        if key in IDENTITY_KEYS and masked == value and len(value) > 5:
            masked = value[:5] + "****"
        event_dict[key] = masked
    return event_dict
