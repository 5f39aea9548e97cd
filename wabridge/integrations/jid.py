"""wabridge – WhatsApp identity (JID) helpers.

A participant is either addressable (``<phone>@s.whatsapp.net``), a
privacy-preserving linked id (``<opaque>@lid``) or a group
(``<id>@g.us``). Device suffixes (``628123:12@s.whatsapp.net``) are
stripped before any comparison.
"""

import re

ADDRESSABLE_SUFFIX = "@s.whatsapp.net"
LINKED_SUFFIX = "@lid"
GROUP_SUFFIX = "@g.us"
STATUS_BROADCAST = "status@broadcast"

_NON_DIGITS = re.compile(r"\D")


def normalize_jid(jid: str | None) -> str:
    """Strip the device part: ``user:device@server`` → ``user@server``."""
    if not jid:
        return ""
    jid = jid.strip()
    if "@" not in jid:
        return jid
    user, server = jid.split("@", 1)
    if ":" in user:
        user = user.split(":", 1)[0]
    return f"{user}@{server}"


def is_addressable(jid: str | None) -> bool:
    return bool(jid) and jid.endswith(ADDRESSABLE_SUFFIX)


def is_linked(jid: str | None) -> bool:
    return bool(jid) and jid.endswith(LINKED_SUFFIX)


def is_group(jid: str | None) -> bool:
    return bool(jid) and jid.endswith(GROUP_SUFFIX)


def is_status_broadcast(jid: str | None) -> bool:
    return jid == STATUS_BROADCAST


def local_part(jid: str) -> str:
    return normalize_jid(jid).split("@", 1)[0]


def format_phone(raw: str, country_code: str = "62") -> str:
    """Turn free-form phone input into an addressable JID.

    Non-digits are dropped and a national leading ``0`` is replaced by the
    country code. Input that already carries a server part is only
    normalized.
    """
    raw = (raw or "").strip()
    if "@" in raw:
        return normalize_jid(raw)
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return ""
    if digits.startswith("0"):
        digits = country_code + digits[1:]
    return f"{digits}{ADDRESSABLE_SUFFIX}"


def format_pretty_id(jid: str | None, country_code: str = "62") -> str:
    """Human readable form of an identity.

    Linked ids have no phone number to show and yield an empty string.
    """
    if not jid or is_linked(jid):
        return ""
    user = local_part(jid)
    if user.startswith(country_code):
        return f"+{user}"
    return user
