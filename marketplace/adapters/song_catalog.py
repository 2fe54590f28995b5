"""
Song Catalog Adapter — who owns a song?

Listings can only be created by the owner of the underlying song. Songs
live in the platform's catalog service (PostgREST-style REST API), not in
the marketplace datastore, so ownership is looked up over HTTP:

    GET {base}/songs?id=eq.{song_id}&select=id,user_id
    → [{"id": "...", "user_id": "..."}]   or   []
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from marketplace.errors import CatalogError

logger = logging.getLogger("market.adapter.song_catalog")


class SongCatalog(ABC):
    """Source of truth for song ownership."""

    @abstractmethod
    async def get_owner(self, song_id: str) -> Optional[str]:
        """Owning user id, or None if the song doesn't exist."""
        ...

    async def close(self) -> None:
        pass


class HttpSongCatalog(SongCatalog):

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10.0):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Accept": "application/json"}
            if self._api_key:
                headers["apikey"] = self._api_key
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=headers)
        return self._session

    async def get_owner(self, song_id: str) -> Optional[str]:
        session = await self._get_session()
        params = {"id": f"eq.{song_id}", "select": "id,user_id"}
        try:
            async with session.get(f"{self._base_url}/songs", params=params) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    logger.warning(f"Song catalog returned HTTP {resp.status} for {song_id}")
                    raise CatalogError(f"song lookup HTTP {resp.status}: {body[:200]}")
                rows = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise CatalogError(f"song lookup failed: {type(e).__name__}: {e}") from e

        if not rows:
            return None
        owner = rows[0].get("user_id")
        return str(owner) if owner is not None else None

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
