import asyncio
import base64
import binascii
import json
import logging
from typing import Any, Dict, Optional, Sequence, Union
from urllib.parse import unquote, urljoin

import aiohttp

from .clarity import ContractCallError, decode_hex, to_python
from .utils import split_contract_id

logger = logging.getLogger(__name__)

USER_AGENT = "Lakehouse-Token-Validator/1.0"
DATA_JSON_BASE64 = "data:application/json;base64,"
DATA_JSON_PLAIN = "data:application/json,"


class StacksApiError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


def _is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


class StacksClient:
    """Stacks node API client with retry and exponential backoff."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_sec: float = 12,
        max_retries: int = 3,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_retries = max(1, int(max_retries))
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "StacksClient":
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Any:
        if not self._session:
            raise RuntimeError("Stacks API session is not initialized")
        url = f"{self.base_url}{path}"

        backoff = 0.5
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._session.request(method, url, json=payload) as resp:
                    if resp.status == 404 and allow_404:
                        return None
                    if resp.status >= 400:
                        text = await resp.text()
                        raise StacksApiError(
                            f"{method} {path} -> HTTP {resp.status}: {text[:200]}",
                            status=resp.status,
                            retryable=_is_retryable_status(resp.status),
                        )
                    return await resp.json(content_type=None)
            except StacksApiError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                if attempt >= self.max_retries:
                    raise StacksApiError(f"{method} {path} failed: {type(e).__name__}: {e}") from e
            logger.debug("%s %s attempt %d failed, retrying in %.1fs", method, path, attempt, backoff)
            await asyncio.sleep(backoff)
            backoff *= 2
        raise StacksApiError(f"{method} {path} failed")

    async def call_read_only(
        self,
        contract_id: str,
        function: str,
        args_hex: Sequence[str] = (),
        sender: Optional[str] = None,
    ) -> Any:
        address, name = split_contract_id(contract_id)
        data = await self.request(
            "POST",
            f"/v2/contracts/call-read/{address}/{name}/{function}",
            {"sender": sender or address, "arguments": list(args_hex)},
        )
        if not isinstance(data, dict):
            raise StacksApiError(f"unexpected call-read response for {contract_id}::{function}")
        if not data.get("okay"):
            raise ContractCallError(
                f"{contract_id}::{function} rejected: {data.get('cause') or 'unknown cause'}"
            )
        return to_python(decode_hex(data.get("result", "")))

    async def get_contract_info(self, contract_id: str) -> Optional[Dict[str, Any]]:
        data = await self.request("GET", f"/extended/v1/contract/{contract_id}", allow_404=True)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise StacksApiError(f"unexpected contract response for {contract_id}")
        abi = data.get("abi")
        if isinstance(abi, str):
            try:
                abi = json.loads(abi)
            except ValueError:
                logger.warning("contract %s has an unparseable abi", contract_id)
                abi = None
        data["abi"] = abi if isinstance(abi, dict) else None
        return data

    async def get_stx_balance(self, address: str) -> int:
        data = await self.request("GET", f"/extended/v1/address/{address}/balances")
        try:
            return int(data["stx"]["balance"])
        except (KeyError, TypeError, ValueError) as e:
            raise StacksApiError(f"no stx balance in response for {address}") from e

    async def fetch_json(self, url: str, timeout_sec: float) -> Any:
        """One GET with its own timeout; token URIs are not retried."""
        if not self._session:
            raise RuntimeError("Stacks API session is not initialized")
        async with self._session.get(
            url,
            timeout=aiohttp.ClientTimeout(total=timeout_sec),
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
        ) as resp:
            if resp.status >= 400:
                raise StacksApiError(f"HTTP {resp.status} fetching {url}", status=resp.status)
            return await resp.json(content_type=None)

    async def fetch_token_metadata(self, uri: str, gateway: str, timeout_sec: float) -> Dict[str, Any]:
        resolved = resolve_token_uri(uri, gateway)
        if not uri.strip().startswith("data:"):
            resolved = await self.fetch_json(resolved, timeout_sec)
        if not isinstance(resolved, dict):
            raise ValueError(f"token metadata is not a JSON object: {uri}")
        return resolved


def ipfs_to_gateway(uri: str, gateway: str) -> str:
    path = uri[len("ipfs://"):]
    if path.startswith("ipfs/"):
        path = path[len("ipfs/"):]
    return gateway + path


def resolve_token_uri(uri: str, gateway: str) -> Union[str, Any]:
    """Map a token URI to a fetchable URL, or decode it when it is inline.

    ``data:application/json`` URIs (base64 or percent-encoded) are decoded
    and returned as the parsed JSON value. Other schemes raise ``ValueError``.
    """
    uri = uri.strip()
    if uri.startswith(DATA_JSON_BASE64):
        try:
            raw = base64.b64decode(uri[len(DATA_JSON_BASE64):], validate=False)
            return json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise ValueError(f"invalid base64 data uri: {e}") from e
    if uri.startswith(DATA_JSON_PLAIN):
        return json.loads(unquote(uri[len(DATA_JSON_PLAIN):]))
    if uri.startswith("ipfs://"):
        return ipfs_to_gateway(uri, gateway)
    if uri.startswith(("http://", "https://")):
        return uri
    raise ValueError(f"unsupported token uri scheme: {uri[:32]}")


def normalize_image_url(url: Any, base: Optional[str] = None, gateway: str = "https://ipfs.io/ipfs/") -> Optional[str]:
    if not url or not isinstance(url, str):
        return None
    url = url.strip()
    if url.startswith("ipfs://"):
        return ipfs_to_gateway(url, gateway)
    if url.startswith(("./", "../")):
        if base and base.startswith(("http://", "https://")):
            return urljoin(base, url)
        return None
    if url.startswith(("http://", "https://")):
        return url
    if url.startswith("//"):
        return "https:" + url
    return url


def as_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, bytes) and value:
        return value.decode("utf-8", errors="replace")
    return None


def as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 10)
        except ValueError:
            return None
    return None
