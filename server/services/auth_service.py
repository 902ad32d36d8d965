from __future__ import annotations

import secrets
import time
from typing import Optional
from urllib.parse import urlencode

from itsdangerous import BadSignature, URLSafeTimedSerializer

from services.spotify_api import PERMISSION_SCOPE


SONOS_AUTHORIZE_URL = "https://api.sonos.com/login/v3/oauth"
SONOS_SCOPE = "playback-control-all"
SPOTIFY_AUTHORIZE_URL = "https://accounts.spotify.com/authorize"


class AuthService:
    """Signed host tokens and OAuth ``state`` values."""

    def __init__(
        self,
        *,
        session_signer: URLSafeTimedSerializer,
        state_signer: URLSafeTimedSerializer,
        session_max_age: int,
        state_max_age: int = 600,
    ) -> None:
        self._session_signer = session_signer
        self._state_signer = state_signer
        self._session_max_age = int(session_max_age)
        self._state_max_age = int(state_max_age)

    def encode_host_token(self, user_id: int) -> str:
        return self._session_signer.dumps({"user_id": user_id, "ts": int(time.time())})

    def resolve_host(self, token: Optional[str]) -> Optional[int]:
        if not token:
            return None
        try:
            data = self._session_signer.loads(token, max_age=self._session_max_age)
        except BadSignature:
            return None
        user_id = data.get("user_id") if isinstance(data, dict) else None
        return user_id if isinstance(user_id, int) else None

    def encode_state(self, user_id: Optional[int] = None) -> str:
        return self._state_signer.dumps({"user_id": user_id, "nonce": secrets.token_hex(8)})

    def decode_state(self, state: Optional[str]) -> Optional[dict]:
        if not state:
            return None
        try:
            data = self._state_signer.loads(state, max_age=self._state_max_age)
        except BadSignature:
            return None
        return data if isinstance(data, dict) else None

    def sonos_authorize_url(self, *, client_id: str, redirect_uri: str) -> str:
        params = {
            "client_id": client_id,
            "response_type": "code",
            "state": self.encode_state(),
            "scope": SONOS_SCOPE,
            "redirect_uri": redirect_uri,
        }
        return f"{SONOS_AUTHORIZE_URL}?{urlencode(params)}"

    def spotify_authorize_url(self, user_id: int, *, client_id: str, redirect_uri: str) -> str:
        params = {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": PERMISSION_SCOPE,
            "state": self.encode_state(user_id),
        }
        return f"{SPOTIFY_AUTHORIZE_URL}?{urlencode(params)}"
