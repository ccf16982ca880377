"""
Link registry: the slug → origin URL mapping on top of the key-value store.

Writes go straight to the store. Creating an existing slug replaces it.
"""
from __future__ import annotations

import logging

from vidrelay.models import LinkEntry

logger = logging.getLogger(__name__)

KEY_PREFIX = "videos:"


class LinkNotFound(LookupError):
    def __init__(self, slug: str) -> None:
        super().__init__(f"No link for slug '{slug}'")
        self.slug = slug


def _key(slug: str) -> str:
    return f"{KEY_PREFIX}{slug}"


class LinkRegistry:
    def __init__(self, store) -> None:
        self.store = store

    async def create(self, slug: str, origin_url: str) -> LinkEntry:
        await self.store.set(_key(slug), origin_url)
        logger.info("Stored link %s", slug)
        return LinkEntry(slug=slug, origin_url=origin_url)

    async def resolve(self, slug: str) -> str:
        origin_url = await self.store.get(_key(slug))
        if origin_url is None:
            raise LinkNotFound(slug)
        return origin_url

    async def delete(self, slug: str) -> None:
        if not await self.store.delete(_key(slug)):
            raise LinkNotFound(slug)
        logger.info("Deleted link %s", slug)

    async def list_all(self) -> list[LinkEntry]:
        """Every stored link, sorted by slug. Unpaginated."""
        raw = await self.store.list_prefix(KEY_PREFIX)
        entries = [
            LinkEntry(slug=key[len(KEY_PREFIX):], origin_url=value)
            for key, value in raw.items()
        ]
        entries.sort(key=lambda e: e.slug)
        return entries
