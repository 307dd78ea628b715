"""report_api.py

Клиент REST API учёта квартир для ежедневного отчёта.

- TokenSession: пара access/refresh, явные состояния
  unauthenticated -> authenticated -> expired -> (refresh | login).
- ApiClient: GET с bearer-токеном; на 401 ровно одно обновление токена
  и ровно один повтор запроса.
- Постраничные списки (`results` + `next`) собираются целиком.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import urllib.parse
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from report_config import Config, ReportError

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}


class AuthError(ReportError):
    pass


class FetchError(ReportError):
    def __init__(self, message: str, status: Optional[int] = None, url: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class SessionState(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


def _is_success(status: int) -> bool:
    return 200 <= status < 300


class TokenSession:
    """Holds the API credentials for the lifetime of the process.

    With a static admin token there is nothing to refresh: a rejected token
    invalidates the session and the next cycle adopts the token again.
    """

    def __init__(
        self,
        base_url: str,
        *,
        username: str = "",
        password: str = "",
        static_token: str = "",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.static_token = static_token
        self.access = ""
        self.refresh_token = ""
        self.state = SessionState.UNAUTHENTICATED
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, cfg: Config) -> "TokenSession":
        if cfg.AUTH_MODE == "token":
            return cls(cfg.API_BASE_URL, static_token=cfg.ADMIN_TOKEN)
        return cls(cfg.API_BASE_URL, username=cfg.ADMIN_USERNAME, password=cfg.ADMIN_PASSWORD)

    @property
    def is_static(self) -> bool:
        return bool(self.static_token)

    def invalidate(self) -> None:
        self.access = ""
        self.refresh_token = ""
        self.state = SessionState.UNAUTHENTICATED

    def mark_expired(self) -> None:
        if self.state == SessionState.AUTHENTICATED:
            self.state = SessionState.EXPIRED

    async def ensure(self, http: aiohttp.ClientSession) -> str:
        """Returns a usable access token, logging in or refreshing as needed."""
        if self.state == SessionState.AUTHENTICATED:
            return self.access
        if self.state == SessionState.EXPIRED:
            await self.refresh(http, rejected_access=self.access)
        else:
            await self.login(http)
        return self.access

    async def login(self, http: aiohttp.ClientSession) -> None:
        async with self._lock:
            await self._login(http)

    async def _login(self, http: aiohttp.ClientSession) -> None:
        if self.is_static:
            self.access = self.static_token
            self.refresh_token = ""
            self.state = SessionState.AUTHENTICATED
            return
        if not (self.username and self.password):
            self.invalidate()
            raise AuthError("No credentials configured for login")

        url = f"{self.base_url}/login/"
        payload = {"phone_number": self.username, "password": self.password}
        try:
            async with http.post(url, json=payload, headers=JSON_HEADERS) as resp:
                if not _is_success(resp.status):
                    detail = (await resp.text())[:200]
                    self.invalidate()
                    raise AuthError(f"Login failed: HTTP {resp.status} {detail}".strip())
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as exc:
            self.invalidate()
            raise AuthError(f"Login timed out: {url}") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            self.invalidate()
            raise AuthError(f"Login failed: {exc}") from exc

        access = data.get("access") if isinstance(data, dict) else None
        if not access:
            self.invalidate()
            raise AuthError("Login response has no access token")

        self.access = str(access)
        self.refresh_token = str(data.get("refresh") or "")
        self.state = SessionState.AUTHENTICATED
        logger.info("Logged in to %s", self.base_url)

    async def refresh(self, http: aiohttp.ClientSession, rejected_access: str) -> None:
        """Refreshes the access token; falls back to a full login on failure."""
        async with self._lock:
            if self.state == SessionState.AUTHENTICATED and self.access and self.access != rejected_access:
                # another request already refreshed it
                return
            self.mark_expired()

            if self.is_static:
                self.invalidate()
                raise AuthError("Static admin token was rejected by the API")

            if self.refresh_token and await self._try_refresh(http):
                return

            logger.warning("Token refresh failed, logging in again")
            await self._login(http)

    async def _try_refresh(self, http: aiohttp.ClientSession) -> bool:
        url = f"{self.base_url}/token/refresh/"
        try:
            async with http.post(url, json={"refresh": self.refresh_token}, headers=JSON_HEADERS) as resp:
                if not _is_success(resp.status):
                    logger.warning("Token refresh rejected: HTTP %s", resp.status)
                    return False
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("Token refresh error: %s", exc)
            return False

        access = data.get("access") if isinstance(data, dict) else None
        if not access:
            return False
        self.access = str(access)
        if data.get("refresh"):
            self.refresh_token = str(data["refresh"])
        self.state = SessionState.AUTHENTICATED
        logger.info("Access token refreshed")
        return True


class ApiClient:
    def __init__(
        self,
        http: aiohttp.ClientSession,
        session: TokenSession,
        page_size: int = 100,
    ) -> None:
        self.http = http
        self.session = session
        self.page_size = page_size

    def url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return self.session.base_url + path

    async def _get(self, url: str, params: Optional[Dict[str, Any]], token: str) -> Tuple[int, Any]:
        headers = dict(JSON_HEADERS)
        headers["Authorization"] = f"Bearer {token}"
        try:
            async with self.http.get(url, params=params, headers=headers) as resp:
                if not _is_success(resp.status):
                    return resp.status, None
                return resp.status, await resp.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise FetchError(f"GET {url} timed out", url=url) from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise FetchError(f"GET {url} failed: {exc}", url=url) from exc

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = self.url(path)
        logger.debug("GET %s", url)
        token = await self.session.ensure(self.http)
        status, data = await self._get(url, params, token)
        if status == 401:
            logger.info("Access token rejected for %s, refreshing", url)
            await self.session.refresh(self.http, rejected_access=token)
            status, data = await self._get(url, params, self.session.access)
            if status == 401:
                self.session.mark_expired()
        if not _is_success(status):
            raise FetchError(f"GET {url} -> HTTP {status}", status=status, url=url)
        return data

    async def get_list(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Any]:
        """Collects a list endpoint, following `next` links of paginated responses."""
        query: Optional[Dict[str, Any]] = dict(params or {})
        query.setdefault("page_size", self.page_size)
        url = self.url(path)
        seen = {url}
        items: List[Any] = []
        while True:
            data = await self.get_json(url, query)
            if isinstance(data, list):
                items.extend(data)
                return items
            if not isinstance(data, dict) or not isinstance(data.get("results", []), list):
                raise FetchError(f"Unexpected list payload from {url}", url=url)
            items.extend(data.get("results") or [])

            next_url = data.get("next")
            if not next_url:
                return items
            next_url = urllib.parse.urljoin(url, str(next_url))
            if next_url in seen:
                logger.warning("Pagination loop detected at %s", next_url)
                return items
            seen.add(next_url)
            url = next_url
            # next already carries the query string
            query = None


async def fetch_apartments(api: ApiClient) -> List[Any]:
    return await api.get_list("/apartments/")


async def fetch_payments(api: ApiClient) -> List[Any]:
    return await api.get_list("/payments/")


async def fetch_expense_statistics(api: ApiClient) -> Optional[Dict[str, Any]]:
    """Pre-aggregated expense totals; None when the endpoint does not exist."""
    try:
        data = await api.get_json("/expenses/statistics/")
    except FetchError as exc:
        if exc.status == 404:
            logger.info("Expense statistics endpoint is not available (404)")
            return None
        raise
    return data if isinstance(data, dict) else {}


async def fetch_clients(api: ApiClient, user_type: str) -> List[Any]:
    return await api.get_list("/users/", {"user_type": user_type})
