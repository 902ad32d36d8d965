from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import NamedTuple, Optional, TypeVar

import httpx

from services.errors import AuthError
from services.session_store import SessionStore


log = logging.getLogger("auxcord")

R = TypeVar("R")


class TokenPair(NamedTuple):
    access_token: str
    refresh_token: str
    expires_in: Optional[int]


async def call_with_token_refresh(
    send: Callable[[str], Awaitable[R]],
    *,
    token: Callable[[], str],
    refresh: Callable[[], Awaitable[str]],
    is_token_fault: Callable[[R], bool],
) -> R:
    """Run ``send`` with the current token, refreshing and retrying exactly once on a token fault.

    ``token`` is read fresh on every call because another task may already
    have refreshed it. A refresh failure propagates as ``AuthError``; a token
    fault after the retry is also an ``AuthError``.
    """
    result = await send(token())
    if not is_token_fault(result):
        return result
    log.info("Access token rejected, refreshing and retrying once")
    fresh = await refresh()
    result = await send(fresh)
    if is_token_fault(result):
        raise AuthError("Access token still rejected after refresh")
    return result


class TokenManager:
    """OAuth code and refresh-token exchanges for one provider, persisted per user."""

    def __init__(
        self,
        *,
        provider: str,
        token_url: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        store: SessionStore,
        table: str,
        timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._provider = provider
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._store = store
        self._table = table
        self._timeout = float(timeout)
        self._transport = transport

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def redirect_uri(self) -> str:
        return self._redirect_uri

    async def _post(self, data: dict) -> dict:
        if not self._client_id or not self._client_secret:
            raise AuthError(f"{self._provider} client credentials are not configured")
        headers = {"Accept-Charset": "UTF-8"}
        auth = httpx.BasicAuth(self._client_id, self._client_secret)
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._token_url, data=data, headers=headers, auth=auth)
        except httpx.HTTPError as exc:
            raise AuthError(f"{self._provider} token endpoint unreachable: {exc}") from exc
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if resp.status_code >= 400 or not isinstance(payload, dict):
            raise AuthError(f"{self._provider} rejected the token request ({resp.status_code})")
        if payload.get("error"):
            raise AuthError(f"{self._provider} rejected the token request: {payload.get('error')}")
        return payload

    async def exchange(self, user_id: int, authorization_code: str) -> TokenPair:
        payload = await self._post(
            {
                "grant_type": "authorization_code",
                "code": authorization_code,
                "redirect_uri": self._redirect_uri,
            }
        )
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        if not access_token or not refresh_token:
            raise AuthError(f"{self._provider} token response is missing tokens")
        pair = TokenPair(access_token, refresh_token, payload.get("expires_in"))
        record = pair._asdict()
        if self._store.get(self._table, user_id) is None:
            self._store.insert(self._table, user_id, record)
        else:
            self._store.update(self._table, user_id, record)
        log.info("Linked %s account for user %s", self._provider, user_id)
        return pair

    async def refresh(self, user_id: int) -> str:
        row = self._store.get(self._table, user_id)
        refresh_token = (row or {}).get("refresh_token")
        if not refresh_token:
            raise AuthError(f"{self._provider} is not linked")
        log.info("Refreshing %s access token for user %s", self._provider, user_id)
        payload = await self._post({"grant_type": "refresh_token", "refresh_token": refresh_token})
        access_token = payload.get("access_token")
        if not access_token:
            raise AuthError(f"{self._provider} refresh response is missing access_token")
        changes = {"access_token": access_token, "expires_in": payload.get("expires_in")}
        if payload.get("refresh_token"):
            changes["refresh_token"] = payload["refresh_token"]
        self._store.update(self._table, user_id, changes)
        return access_token

    def access_token(self, user_id: int) -> str:
        row = self._store.get(self._table, user_id)
        token = (row or {}).get("access_token")
        if not token:
            raise AuthError(f"{self._provider} is not linked")
        return token
