import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from strategy.transports.base import ExchangeError


class HitBTCAPIError(ExchangeError):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.body = body
        text = f"HitBTC API error (status={status}, code={code}, msg={msg})"
        super().__init__(text, status=status, code=code, msg=msg)


class HitBTCRESTClient:
    """REST v2 client; private endpoints authenticate with HTTP basic auth."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout_s: float = 15.0,
    ):
        self.base_url = (base_url or "https://api.hitbtc.com/api/2").rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
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

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        auth = None
        if signed:
            if not self.api_key or not self.api_secret:
                raise RuntimeError("HitBTC API key/secret required for private request")
            auth = aiohttp.BasicAuth(self.api_key, self.api_secret)

        url = f"{self.base_url}/{path.lstrip('/')}"
        query = params if method.upper() == "GET" else None
        form = params if method.upper() != "GET" and params else None

        async with session.request(
            method.upper(),
            url,
            params=query,
            data=form,
            auth=auth,
            headers={"Accept": "application/json"},
        ) as resp:
            text = await resp.text()
            try:
                payload: Any = json.loads(text) if text else None
            except ValueError:
                payload = text

            error = payload.get("error") if isinstance(payload, dict) else None
            if resp.status >= 400 or error:
                code = None
                msg = None
                if isinstance(error, dict):
                    code = error.get("code")
                    msg = error.get("message")
                raise HitBTCAPIError(resp.status, code, msg, text)

            return payload

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("POST", path, params=params, signed=signed)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed)
