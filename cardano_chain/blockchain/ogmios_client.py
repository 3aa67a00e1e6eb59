"""Ogmios JSON-RPC client (WebSocket, or plain HTTP) for Cardano node access."""

import asyncio
import base64
import json
import logging
from typing import Any, Dict, Optional

import aiohttp
import websockets
from websockets.asyncio.client import ClientConnection, connect
from websockets.protocol import State

from ..errors import OgmiosConnectionError, OgmiosQueryError

logger = logging.getLogger(__name__)


class OgmiosClient:
    """
    Async client for the Ogmios v6 JSON-RPC API.

    With `use_http=True` every request is an HTTP POST to the same URL
    (http:// or https://); otherwise one WebSocket connection is kept and
    request/response pairs are serialised on it.
    """

    def __init__(
        self,
        url: str = "ws://localhost:1337",
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_http: bool = False,
        timeout: float = 30.0,
    ):
        self.url = url
        self.username = username
        self.password = password
        self.use_http = use_http
        self.timeout = timeout
        self._ws: Optional[ClientConnection] = None
        self._http: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()
        self._request_id = 0

    def _get_headers(self) -> Dict[str, str]:
        if self.username and self.password:
            encoded = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
            return {"Authorization": f"Basic {encoded}"}
        return {}

    async def connect(self) -> bool:
        """Connect to Ogmios. Returns True on success."""
        if self.use_http:
            if self._http is None or self._http.closed:
                self._http = aiohttp.ClientSession(headers=self._get_headers())
            return True
        try:
            headers = self._get_headers()
            # Large UTxO sets need a bigger frame limit (50MB)
            connect_kwargs: Dict[str, Any] = {"max_size": 50 * 1024 * 1024}
            if headers:
                connect_kwargs["additional_headers"] = headers
            self._ws = await connect(self.url, **connect_kwargs)
            logger.info(f"Connected to Ogmios at {self.url}")
            return True
        except ConnectionRefusedError:
            logger.error(f"Connection refused. Is Ogmios running at {self.url}?")
            return False
        except (OSError, websockets.InvalidHandshake, websockets.InvalidURI) as e:
            logger.error(f"Failed to connect to Ogmios: {e}")
            return False

    async def disconnect(self):
        if self._ws:
            await self._ws.close()
            self._ws = None
            logger.info("Disconnected from Ogmios")
        if self._http:
            await self._http.close()
            self._http = None

    @property
    def is_connected(self) -> bool:
        if self.use_http:
            return self._http is not None and not self._http.closed
        return self._ws is not None and self._ws.state is State.OPEN

    async def __aenter__(self):
        if not self.is_connected and not await self.connect():
            raise OgmiosConnectionError(f"Failed to connect to {self.url}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send a JSON-RPC request and return its `result`."""
        if not self.is_connected and not await self.connect():
            raise OgmiosConnectionError(f"Not connected to Ogmios at {self.url}")

        body = {"jsonrpc": "2.0", "method": method, "id": self._next_request_id()}
        if params:
            body["params"] = params

        logger.debug(f"Ogmios request {body['id']}: {method}")
        if self.use_http:
            response = await self._post(body)
        else:
            response = await self._exchange(body)

        if "error" in response:
            err = response["error"]
            message = err.get("message", err) if isinstance(err, dict) else err
            raise OgmiosQueryError(f"Ogmios error in {method}: {message}")
        if "result" not in response:
            raise OgmiosQueryError(f"Ogmios response to {method} has no result")
        return response["result"]

    async def _exchange(self, body: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            try:
                await self._ws.send(json.dumps(body))
                return await asyncio.wait_for(self._receive(body["id"]), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise OgmiosQueryError(f"Request timed out after {self.timeout}s: {body['method']}")
            except websockets.ConnectionClosed as e:
                self._ws = None
                raise OgmiosConnectionError(f"Connection to Ogmios closed: {e}") from e

    async def _receive(self, request_id: int) -> Dict[str, Any]:
        """Read frames until the reply to `request_id` arrives."""
        while True:
            raw = await self._ws.recv()
            try:
                response = json.loads(raw)
            except ValueError as e:
                raise OgmiosQueryError(f"Malformed Ogmios response: {e}") from e
            # Replies to timed-out or cancelled requests can still be queued
            if isinstance(response, dict) and response.get("id") == request_id:
                return response
            stale_id = response.get("id") if isinstance(response, dict) else None
            logger.warning(f"Dropping stale Ogmios reply (id {stale_id}), waiting for {request_id}")

    async def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._http.post(
                self.url,
                json=body,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                # Ogmios answers JSON-RPC errors with 4xx bodies that still carry the error
                return await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise OgmiosQueryError(f"Request timed out after {self.timeout}s: {body['method']}")
        except aiohttp.ClientError as e:
            raise OgmiosConnectionError(f"HTTP request to Ogmios failed: {e}") from e
        except ValueError as e:
            raise OgmiosQueryError(f"Malformed Ogmios response: {e}") from e
