"""Populate-once cache of reference images shared by a batch.

Keys look like ``char:{name}`` or ``bg:{id}``. The first caller for a key
starts the download; concurrent callers await the same in-flight task. A
failed download is evicted so the next caller retries it.
"""

import asyncio
import logging
from typing import Optional

from genpipe.services.storage import BlobStore

logger = logging.getLogger(__name__)


def character_key(name: str) -> str:
    return f"char:{name}"


def background_key(background_id: str) -> str:
    return f"bg:{background_id}"


class ReferenceImageCache:
    def __init__(self, store: BlobStore):
        self._store = store
        self._entries: dict[str, asyncio.Task[bytes]] = {}

    def __contains__(self, key: str) -> bool:
        task = self._entries.get(key)
        return task is not None and task.done() and not task.cancelled() and task.exception() is None

    async def get(self, key: str, url: Optional[str]) -> Optional[bytes]:
        """Bytes for ``key``, downloading ``url`` on first use.

        Returns None when there is no URL to fetch.
        """
        task = self._entries.get(key)
        if task is None:
            if not url:
                return None
            task = asyncio.ensure_future(self._store.get(url))
            self._entries[key] = task
            logger.debug("Reference %s: downloading %s", key, url)

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and self._entries.get(key) is task:
                del self._entries[key]
            raise
        except Exception:
            if self._entries.get(key) is task:
                del self._entries[key]
                logger.warning("Reference %s: download failed, not cached", key)
            raise
