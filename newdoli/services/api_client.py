"""
HTTP gateway for the Dolibarr REST API.

Usage pattern:

    gateway = RemoteGateway(config_store)

    result = await gateway.login("toto", "Toto01")
    user = await gateway.introspect(result.token)
    third_parties = await gateway.fetch_third_parties(result.token)

The gateway keeps no session state: every authenticated call takes the
credential as an argument, and the base URL is re-read from the
ConfigStore on each request.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from newdoli.core.config import ConfigStore, get_settings
from newdoli.core.errors import (
    APIError,
    AuthError,
    ConfigurationError,
    LoginError,
    PayloadError,
    ResponseError,
    TransportError,
)

from .schemas import LoginResult, RemoteGroup, RemoteProduct, RemoteThirdParty, UserInfo

logger = logging.getLogger(__name__)

AUTH_HEADER = "DOLAPIKEY"

LOGIN_ENDPOINT = "login"
LOGOUT_ENDPOINT = "logout"
USER_INFO_ENDPOINT = "users/info"
USERS_ENDPOINT = "users"
GROUPS_ENDPOINT = "groups"
THIRD_PARTIES_ENDPOINT = "thirdparties"
PRODUCTS_ENDPOINT = "products"
STATUS_ENDPOINT = "status"

M = TypeVar("M", bound=BaseModel)


class RemoteGateway:
    """
    Stateless client for the Dolibarr backend.

    Failures surface as three distinct causes: ``TransportError`` (no
    response), ``ResponseError`` (non-2xx; ``AuthError`` for 401/403) and
    ``PayloadError`` (2xx with a body that breaks the contract).
    """

    def __init__(
        self,
        config: ConfigStore,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.timeout = timeout if timeout is not None else get_settings().request_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ---------- Internal helpers ----------

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    @staticmethod
    def _auth_header(token: str) -> Dict[str, str]:
        if not token:
            raise APIError("No Dolibarr token available")
        return {AUTH_HEADER: token}

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        token: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        url = await self.config.api_url(endpoint)
        headers = self._auth_header(token) if token is not None else {}
        client = await self._ensure_client()
        try:
            resp = await client.request(method, url, headers=headers, **kwargs)
        except httpx.InvalidURL as exc:
            raise ConfigurationError(f"Invalid Dolibarr URL: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {endpoint} failed: {exc}") from exc

        if resp.status_code in (401, 403):
            raise AuthError("token invalid", status_code=resp.status_code)
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ResponseError(
                f"{method} {endpoint} failed: HTTP {resp.status_code}",
                status_code=resp.status_code,
            ) from exc
        return resp

    @staticmethod
    def _json(resp: httpx.Response, endpoint: str) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise PayloadError(f"{endpoint} returned a non-JSON body") from exc

    def _parse(self, model: Type[M], data: Any, endpoint: str) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise PayloadError(f"{endpoint} returned an unexpected payload: {exc}") from exc

    async def _fetch_list(self, endpoint: str, token: str, model: Type[M]) -> List[M]:
        resp = await self._request("GET", endpoint, token=token)
        data = self._json(resp, endpoint)
        if not isinstance(data, list):
            raise PayloadError(f"Expected a list from /{endpoint}")
        items = [self._parse(model, item, endpoint) for item in data]
        seen = set()
        for item in items:
            if item.id in seen:
                raise PayloadError(f"/{endpoint} returned id {item.id} more than once")
            seen.add(item.id)
        return items

    # ---------- Public methods ----------

    async def close(self) -> None:
        """Close underlying HTTP connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ---- Authentication ----

    async def login(self, login: str, password: str) -> LoginResult:
        """
        Exchange credentials for a Dolibarr API token.

        Any failure, whatever its cause, is reported as ``LoginError`` so the
        caller can show it to the user; the underlying error is chained.
        """
        payload = {"login": login, "password": password}
        try:
            resp = await self._request("POST", LOGIN_ENDPOINT, json=payload)
            result = self._parse(LoginResult, self._json(resp, LOGIN_ENDPOINT), LOGIN_ENDPOINT)
        except APIError as exc:
            logger.warning("Dolibarr login failed for '%s': %s", login, exc)
            raise LoginError("login failed", details={"cause": exc.to_dict()}) from exc
        return result

    async def introspect(self, token: str) -> UserInfo:
        """
        ``GET users/info?withrights=1``: validate ``token`` and return its user.

        Raises ``AuthError("token invalid")`` when the backend rejects it.
        """
        resp = await self._request(
            "GET", USER_INFO_ENDPOINT, token=token, params={"withrights": 1}
        )
        return self._parse(UserInfo, self._json(resp, USER_INFO_ENDPOINT), USER_INFO_ENDPOINT)

    async def logout(self, token: str) -> bool:
        """Best effort; failures are logged and reported as ``False``."""
        try:
            await self._request("POST", LOGOUT_ENDPOINT, token=token, json={})
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to logout from Dolibarr API: %s", exc)
            return False
        return True

    # ---- Listings ----

    async def fetch_users(self, token: str) -> List[UserInfo]:
        return await self._fetch_list(USERS_ENDPOINT, token, UserInfo)

    async def fetch_groups(self, token: str) -> List[RemoteGroup]:
        return await self._fetch_list(GROUPS_ENDPOINT, token, RemoteGroup)

    async def fetch_third_parties(self, token: str) -> List[RemoteThirdParty]:
        return await self._fetch_list(THIRD_PARTIES_ENDPOINT, token, RemoteThirdParty)

    async def fetch_products(self, token: str) -> List[RemoteProduct]:
        return await self._fetch_list(PRODUCTS_ENDPOINT, token, RemoteProduct)

    # ---- Health check ----

    async def test_connection(self) -> bool:
        """``GET status``; raises on any failure like the other calls."""
        await self._request("GET", STATUS_ENDPOINT)
        return True
