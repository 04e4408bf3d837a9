from __future__ import annotations

import asyncio
import ssl as _ssl
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import aiohttp
from loguru import logger

IAM_TOKEN_URL = "https://iam.cloud.ibm.com/identity/token"
IAM_APIKEY_GRANT = "urn:ibm:params:oauth:grant-type:apikey"

# ─── Errors ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class HttpError(Exception):
    status: int
    body: str

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.body}"


# ─── Response ────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Response[T]:
    status: int
    data: T
    headers: dict[str, str]


# ─── Auth ────────────────────────────────────────────────────────────


@runtime_checkable
class Auth(Protocol):
    async def headers(self) -> dict[str, str]: ...
    async def on_401(self) -> None: ...


class IamAuth:
    """IBM Cloud IAM bearer token obtained from an API key.

    The token is fetched lazily and dropped on 401 so the next request
    re-authenticates.
    """

    def __init__(self, api_key: str, token_url: str = IAM_TOKEN_URL) -> None:
        self._api_key = api_key
        self._token_url = token_url
        self._token: str | None = None
        self._lock = asyncio.Lock()

    async def _fetch_token(self) -> str:
        logger.bind(component="http").debug("Fetching IAM token")
        timeout = aiohttp.ClientTimeout(total=30)
        async with aiohttp.ClientSession(timeout=timeout) as session, session.post(
            self._token_url,
            data={"grant_type": IAM_APIKEY_GRANT, "apikey": self._api_key},
            headers={"Accept": "application/json"},
        ) as resp:
            if resp.status >= 400:
                body = await resp.text()
                logger.bind(component="http").error(
                    "IAM token fetch failed: status={status} body={body}",
                    status=resp.status, body=body[:200],
                )
                raise HttpError(status=resp.status, body=body)
            data = await resp.json()
            return data["access_token"]

    async def headers(self) -> dict[str, str]:
        async with self._lock:
            if self._token is None:
                self._token = await self._fetch_token()
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }

    async def on_401(self) -> None:
        async with self._lock:
            self._token = None


# ─── Client ──────────────────────────────────────────────────────────


class HttpClient:
    """JSON-over-HTTP client bound to one service endpoint.

    Absolute URLs are passed through untouched, which lets callers follow
    pagination links returned by the service.
    """

    def __init__(
        self,
        base_url: str,
        auth: Auth | None = None,
        *,
        timeout: float = 30,
        default_headers: dict[str, str] | None = None,
        ssl: _ssl.SSLContext | bool = True,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._ssl = ssl
        self._auth = auth
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._default_headers = default_headers or {}
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}{path}"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _build_headers(self) -> dict[str, str]:
        headers = dict(self._default_headers)
        if self._auth:
            headers.update(await self._auth.headers())
        return headers

    async def _attempt(
        self,
        session: aiohttp.ClientSession,
        method: str,
        path: str,
        json: dict[str, Any] | None,
        params: dict[str, Any] | None,
    ) -> Response[Any]:
        headers = await self._build_headers()
        async with session.request(
            method, self._url(path), headers=headers, json=json, params=params,
            ssl=self._ssl,
        ) as resp:
            if resp.status >= 400:
                body = await resp.text()
                self._log.warning(
                    "HTTP {status} from {method} {url}: {body}",
                    status=resp.status, method=method, url=str(resp.url), body=body[:500],
                )
                raise HttpError(status=resp.status, body=body)
            raw = await resp.read()
            data = await resp.json(content_type=None) if raw else None
            return Response(status=resp.status, data=data, headers=dict(resp.headers))

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Response[Any]:
        session = await self._ensure_session()
        self._log.debug("{method} {path}", method=method, path=path)
        try:
            try:
                return await self._attempt(session, method, path, json, params)
            except HttpError as e:
                if e.status != 401 or self._auth is None:
                    raise
                self._log.debug("401 received, refreshing auth and retrying")
                await self._auth.on_401()
                return await self._attempt(session, method, path, json, params)
        except aiohttp.ClientResponseError as e:
            raise HttpError(status=e.status, body=e.message) from e
        except aiohttp.ClientError as e:
            raise HttpError(status=0, body=str(e)) from e

    # ─── Typed convenience ───────────────────────────────────────────

    async def get[T](
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        response_type: type[T],
    ) -> Response[T]:
        _ = response_type
        return await self.request("GET", path, params=params)

    async def post[T](
        self,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        response_type: type[T],
    ) -> Response[T]:
        _ = response_type
        return await self.request("POST", path, json=json)

    async def delete[T](
        self,
        path: str,
        *,
        response_type: type[T],
    ) -> Response[T]:
        _ = response_type
        return await self.request("DELETE", path)

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def close(self) -> None:
        if self._session and not self._session.closed:
            self._log.debug("Closing HTTP session")
            await self._session.close()

    async def __aenter__(self) -> HttpClient:
        await self._ensure_session()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
