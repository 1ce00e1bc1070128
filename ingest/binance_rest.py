import asyncio
import hmac
import hashlib
import json
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from config import config
from execution.errors import TransientNetworkError


MAINNET_URL = "https://fapi.binance.com"
TESTNET_URL = "https://testnet.binancefuture.com"

# Binance codes that mean "try again later" even on a 4xx status
_TRANSIENT_CODES = {-1001, -1003, -1007, -1008, -1021}


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)

    @property
    def is_transient(self) -> bool:
        if self.status in (418, 429) or self.status >= 500:
            return True
        return self.code in _TRANSIENT_CODES


class BinanceRESTClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        testnet: Optional[bool] = None,
        timeout_s: float = 15.0,
    ):
        exchange = config.section("exchange")
        if testnet is None:
            testnet = bool(exchange.get("testnet", False))
        # USDⓈ‑M futures base URL
        default_url = TESTNET_URL if testnet else MAINNET_URL
        self.base_url = (base_url or exchange.get("base_url") or default_url).rstrip("/")
        self.api_key: Optional[str] = api_key if api_key is not None else exchange.get("api_key")
        self.api_secret: Optional[str] = api_secret if api_secret is not None else exchange.get("api_secret")
        self.recv_window = int(exchange.get("recv_window", 5000))
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
            # listenKey endpoints require the API key header only
            headers["X-MBX-APIKEY"] = self.api_key

        url = f"{self.base_url}{path}"
        try:
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
        except asyncio.TimeoutError as exc:
            raise TransientNetworkError(f"{method.upper()} {path} timed out") from exc
        except aiohttp.ClientError as exc:
            raise TransientNetworkError(f"{method.upper()} {path} failed: {exc}") from exc

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

    async def put(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("PUT", path, params=params, signed=signed)

    async def klines(self, symbol: str, interval: str, limit: int = 200) -> List[list]:
        data = await self.get(
            "/fapi/v1/klines",
            params={"symbol": symbol, "interval": interval, "limit": min(int(limit), 1500)},
        )
        return data if isinstance(data, list) else []

    async def create_listen_key(self) -> Optional[str]:
        data = await self.post("/fapi/v1/listenKey")
        if isinstance(data, dict):
            return data.get("listenKey")
        return None

    async def keepalive_listen_key(self) -> None:
        await self.put("/fapi/v1/listenKey")

    async def close_listen_key(self) -> None:
        await self.delete("/fapi/v1/listenKey")
