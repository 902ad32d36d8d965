from __future__ import annotations

from typing import Any

from fastapi import HTTPException


class AuthError(HTTPException):
    """A provider rejected a token exchange or refresh; the host must re-link."""

    def __init__(self, detail: Any = "Authorization rejected, please link your account again") -> None:
        super().__init__(status_code=401, detail=detail)


class DeviceApiError(HTTPException):
    def __init__(self, detail: Any = "Sonos request failed") -> None:
        super().__init__(status_code=502, detail=detail)


class StreamingApiError(HTTPException):
    def __init__(self, detail: Any = "Spotify request failed") -> None:
        super().__init__(status_code=502, detail=detail)


class DuplicateSubmissionError(HTTPException):
    def __init__(self, detail: Any = "Song was already played, or is already in the queue") -> None:
        super().__init__(status_code=409, detail=detail)


class NoHouseholdError(HTTPException):
    def __init__(self, detail: Any = "No Sonos system is attached to this account") -> None:
        super().__init__(status_code=400, detail=detail)
