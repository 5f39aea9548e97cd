"""wabridge – Tenant-keyed registries.

Every per-tenant map (sessions, stats, contact caches, AI profiles) is an
explicit Registry owned by the composition root and injected into the
components that need it.
"""

from __future__ import annotations

from typing import Callable, Generic, Iterator, TypeVar

T = TypeVar("T")


class Registry(Generic[T]):
    """Mapping of tenant id → per-tenant state with an optional factory."""

    def __init__(self, factory: Callable[[], T] | None = None) -> None:
        self._factory = factory
        self._items: dict[str, T] = {}

    def get(self, tenant_id: str) -> T | None:
        return self._items.get(tenant_id)

    def get_or_create(self, tenant_id: str) -> T:
        item = self._items.get(tenant_id)
        if item is None:
            if self._factory is None:
                raise KeyError(tenant_id)
            item = self._factory()
            self._items[tenant_id] = item
        return item

    def set(self, tenant_id: str, item: T) -> None:
        self._items[tenant_id] = item

    def pop(self, tenant_id: str) -> T | None:
        return self._items.pop(tenant_id, None)

    def keys(self) -> list[str]:
        return list(self._items.keys())

    def items(self) -> list[tuple[str, T]]:
        return list(self._items.items())

    def clear(self) -> None:
        self._items.clear()

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)
