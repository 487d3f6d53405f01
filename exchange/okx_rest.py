import asyncio
import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from config import config


logger = logging.getLogger(__name__)


class OKXAPIError(Exception):
    def __init__(self, status: int, code: Optional[str], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"OKX API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


class OKXOrderRejected(OKXAPIError):
    """Envelope accepted (code 0) but the order item carries a non-zero sCode."""

    def __init__(self, s_code: str, s_msg: str, body: str):
        self.s_code = s_code
        self.s_msg = s_msg
        super().__init__(200, s_code, s_msg, body)


def okx_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime('%Y-%m-%dT%H:%M:%S.') + f"{now.microsecond // 1000:03d}Z"


def canonical_json(body: Optional[Dict[str, Any]]) -> str:
    # Signed text and wire payload must be byte-identical.
    if not body:
        return ''
    return json.dumps(body, separators=(',', ':'))


class OKXRESTClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        passphrase: Optional[str] = None,
        base_url: Optional[str] = None,
        demo: Optional[bool] = None,
        timeout_s: Optional[float] = None,
    ):
        exchange_cfg = config.exchange
        self.base_url = (base_url or exchange_cfg.get('base_url') or "https://www.okx.com").rstrip("/")
        self.api_key: Optional[str] = api_key if api_key is not None else exchange_cfg.get('api_key')
        self.secret_key: Optional[str] = secret_key if secret_key is not None else exchange_cfg.get('secret_key')
        self.passphrase: Optional[str] = passphrase if passphrase is not None else exchange_cfg.get('passphrase')
        self.demo = bool(exchange_cfg.get('demo', False)) if demo is None else demo
        self.timeout_s = float(timeout_s or exchange_cfg.get('request_timeout_s', 15))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def sign(self, timestamp: str, method: str, path: str, body: str = '') -> str:
        if not self.secret_key:
            raise RuntimeError("OKX secret key required for signed request")
        message = f"{timestamp}{method.upper()}{path}{body}"
        digest = hmac.new(
            self.secret_key.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def _auth_headers(self, method: str, path: str, body: str) -> Dict[str, str]:
        if not self.api_key or not self.secret_key or not self.passphrase:
            raise RuntimeError("OKX API key/secret/passphrase required for signed request")
        timestamp = okx_timestamp()
        return {
            "OK-ACCESS-KEY": self.api_key,
            "OK-ACCESS-SIGN": self.sign(timestamp, method, path, body),
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": self.passphrase,
        }

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> Tuple[int, Dict[str, Any]]:
        """Perform one round trip and return ``(status, envelope)``.

        Raises :class:`OKXAPIError` on a non-200 status, an undecodable body
        or an envelope whose top-level ``code`` is not ``"0"``.
        """
        session = await self._get_session()
        method = method.upper()
        request_path = path
        if params:
            request_path = f"{path}?{urlencode(params, doseq=True)}"
        payload = canonical_json(body)

        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if signed:
            headers.update(self._auth_headers(method, request_path, payload))
        if self.demo:
            headers["x-simulated-trading"] = "1"

        url = f"{self.base_url}{request_path}"
        async with session.request(
            method,
            url,
            data=payload or None,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
        ) as resp:
            text = await resp.text()
            try:
                envelope = json.loads(text) if text else {}
            except ValueError:
                envelope = None

            if resp.status != 200:
                code = msg = None
                if isinstance(envelope, dict):
                    code = envelope.get("code")
                    msg = envelope.get("msg")
                logger.error("OKX %s %s failed: status=%s body=%s", method, request_path, resp.status, text[:1000])
                raise OKXAPIError(resp.status, code, msg, text)

            if not isinstance(envelope, dict):
                raise OKXAPIError(resp.status, None, "malformed response", text)

            code = str(envelope.get("code", ""))
            if code != "0":
                raise OKXAPIError(resp.status, code, envelope.get("msg"), text)

            return resp.status, envelope

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> Dict[str, Any]:
        _, envelope = await self.request("GET", path, params=params, signed=signed)
        return envelope

    async def post(
        self,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> Dict[str, Any]:
        _, envelope = await self.request("POST", path, body=body, signed=signed)
        return envelope
