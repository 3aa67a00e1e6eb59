"""Koios REST client."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from ..errors import KoiosError
from ..network import GUILDNET, MAINNET, PREPROD, PREVIEW, SANCHONET, Network

logger = logging.getLogger(__name__)

BASE_URLS = {
    MAINNET: "https://api.koios.rest/api/v1",
    PREPROD: "https://preprod.koios.rest/api/v1",
    PREVIEW: "https://preview.koios.rest/api/v1",
    GUILDNET: "https://guild.koios.rest/api/v1",
    SANCHONET: "https://sancho.koios.rest/api/v1",
}


class KoiosClient:
    """Thin async wrapper over the Koios v1 endpoints used by the chain context."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def for_network(cls, network: Network, api_key: Optional[str] = None) -> "KoiosClient":
        return cls(BASE_URLS[network], api_key=api_key)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self):
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}/{path.lstrip('/')}"
        logger.debug(f"Koios {method} {path}")
        try:
            async with session.request(method, url, **kwargs) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise KoiosError(f"Koios {path} returned {resp.status}: {text}")
                return await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise KoiosError(f"Koios {path} timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise KoiosError(f"Koios {path} request failed: {e}") from e

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, body: Any, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("POST", path, json=body, params=params)

    async def post_cbor(self, path: str, cbor: bytes) -> Any:
        return await self._request(
            "POST", path, data=cbor, headers={"Content-Type": "application/cbor"}
        )

    async def paginate(
        self,
        path: str,
        body: Any = None,
        params: Optional[Dict[str, Any]] = None,
        page_size: int = 1000,
    ) -> List[Dict[str, Any]]:
        """
        Fetch every row of a paged endpoint with offset/limit until a short
        page is returned. POSTs `body` when given, otherwise GETs.
        """
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            query = dict(params or {}, offset=offset, limit=page_size)
            if body is None:
                page = await self.get(path, params=query)
            else:
                page = await self.post(path, body, params=query)
            if not isinstance(page, list):
                raise KoiosError(f"Koios {path} returned a non-list page")
            rows.extend(page)
            if len(page) < page_size:
                return rows
            offset += page_size
