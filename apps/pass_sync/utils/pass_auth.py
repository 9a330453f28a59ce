from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from fastapi import Request

from apps.pass_sync.services.errors import PassAuthError


def pass_auth_token(secret: str, serial_number: str) -> str:
    return hmac.new(secret.encode(), serial_number.encode(), hashlib.sha256).hexdigest()


def enforce_pass_auth(request: Request, serial_number: str, secret: Optional[str]) -> None:
    """
    Wallet web-service auth: "Authorization: ApplePass <token>".
    Explicit opt-in: no secret configured means no check.
    """
    if not secret:
        return

    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme != "ApplePass" or not token:
        raise PassAuthError("Missing ApplePass authorization")

    expected = pass_auth_token(secret, serial_number)
    if not hmac.compare_digest(token.strip(), expected):
        raise PassAuthError("Invalid pass authentication token")


def enforce_internal_token(request: Request, expected: Optional[str]) -> None:
    if not expected:
        return
    token = request.headers.get("X-Internal-Token")
    if not token or not hmac.compare_digest(token, expected):
        raise PassAuthError("Invalid internal token")
