import asyncio
import hmac
import hashlib
import json
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from strategy.transports.base import ExchangeError


class BinanceAPIError(ExchangeError):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text, status=status, code=code, msg=msg)


class BinanceRESTClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout_s: float = 15.0,
        recv_window: int = 5000,
    ):
        # Spot API base URL
        self.base_url = (base_url or "https://api.binance.com").rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.recv_window = recv_window
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def _sign(self, params: Dict[str, Any]) -> str:
        query = urlencode(params, doseq=True)
        return hmac.new(
            self.api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        params = dict(params or {})
        headers: Dict[str, str] = {}

        if signed:
            if not self.api_key or not self.api_secret:
                raise RuntimeError("Binance API key/secret required for signed request")
            params.setdefault("timestamp", int(time.time() * 1000))
            params.setdefault("recvWindow", self.recv_window)
            params["signature"] = self._sign(params)
            headers["X-MBX-APIKEY"] = self.api_key
        elif self.api_key:
            headers["X-MBX-APIKEY"] = self.api_key

        url = f"{self.base_url}{path}"

        async with session.request(
            method.upper(),
            url,
            params=params,
            headers=headers,
        ) as resp:
            text = await resp.text()
            content_type = resp.headers.get("Content-Type", "")
            payload: Any
            if "application/json" in content_type:
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text
            else:
                payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("msg")
                raise BinanceAPIError(resp.status, code, msg, text)

            return payload

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        # Binance REST accepts signed params in query string
        return await self._request("POST", path, params=params, signed=signed)

    async def delete(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed)
