"""wabridge – Contact identity resolution.

Maps privacy-preserving linked ids (``…@lid``) to addressable phone JIDs
and keeps the best-known display name per identity, scoped per tenant.
Entries are overwritten by newer contact information and never actively
invalidated. A miss is not an error: callers fall back to the raw id.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from wabridge.core.registry import Registry
from wabridge.integrations.jid import (
    format_pretty_id,
    is_addressable,
    is_linked,
    local_part,
    normalize_jid,
)

logger = structlog.get_logger()


@dataclass
class ContactBook:
    """Per-tenant identity state."""

    names: dict[str, str] = field(default_factory=dict)
    linked_to_addressable: dict[str, str] = field(default_factory=dict)


class IdentityResolver:
    def __init__(self, country_code: str = "62") -> None:
        self._country_code = country_code
        self._books: Registry[ContactBook] = Registry(ContactBook)

    def record_contact(
        self,
        tenant_id: str,
        identity: str,
        name: str | None = None,
        linked_identity: str | None = None,
    ) -> None:
        """Store what a contact event tells us about ``identity``.

        The linked mapping is only recorded when ``identity`` is addressable
        and ``linked_identity`` is not, so resolution flows one way.
        """
        identity = normalize_jid(identity)
        if not identity:
            return
        book = self._books.get_or_create(tenant_id)
        if name:
            book.names[identity] = name
        linked = normalize_jid(linked_identity)
        if linked and is_addressable(identity) and not is_addressable(linked):
            book.linked_to_addressable[linked] = identity
            if name:
                book.names[linked] = name
            logger.debug("identity.linked", tenant_id=tenant_id, linked=linked, identity=identity)

    def resolve_addressable(self, tenant_id: str, identity: str) -> str:
        """Return the addressable id for ``identity`` or the input unchanged."""
        normalized = normalize_jid(identity)
        if not is_linked(normalized):
            return identity
        book = self._books.get(tenant_id)
        if book is None:
            return identity
        return book.linked_to_addressable.get(normalized, identity)

    def resolve_display(self, tenant_id: str, identity: str, push_name: str | None = None) -> str:
        """Known name, then the sender's push name, then a formatted id."""
        normalized = normalize_jid(identity)
        book = self._books.get(tenant_id)
        if book is not None:
            name = book.names.get(normalized)
            if name:
                return name
        if push_name:
            return push_name
        addressable = self.resolve_addressable(tenant_id, normalized)
        if is_linked(addressable):
            return local_part(addressable)
        return format_pretty_id(addressable, self._country_code) or local_part(addressable)

    def known_contacts(self, tenant_id: str) -> int:
        book = self._books.get(tenant_id)
        return len(book.names) if book else 0

    def forget_tenant(self, tenant_id: str) -> None:
        self._books.pop(tenant_id)
