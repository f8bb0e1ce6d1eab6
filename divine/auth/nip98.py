from __future__ import annotations

import base64
import hashlib
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional
from urllib.parse import urlsplit, urlunsplit

from divine.auth.service import AuthService
from divine.nostr import kinds
from divine.nostr.event import Event, first_tag_value

logger = logging.getLogger(__name__)

EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class Nip98AuthError(Exception):
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return f"Nip98AuthError: {self.message}"


@dataclass(frozen=True)
class Nip98Token:
    token: str
    signed_event: Event
    created_at: float
    expires_at: float

    @property
    def is_expired(self) -> bool:
        return time.time() >= self.expires_at

    @property
    def authorization_header(self) -> str:
        return f"Nostr {self.token}"


def normalize_url(url: str) -> str:
    """Reduce a URL to ``scheme://host/path`` for the signed ``u`` tag."""

    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        raise Nip98AuthError(f"Invalid URL: {url}", code="invalid_url")
    return urlunsplit((parts.scheme, parts.hostname, parts.path, "", ""))


def hash_payload(payload: Optional[str | bytes]) -> str:
    if payload is None:
        return EMPTY_PAYLOAD_HASH
    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    return hashlib.sha256(data).hexdigest()


def encode_token(event: Event) -> str:
    return base64.b64encode(event.to_json().encode("utf-8")).decode("ascii")


class Nip98AuthService:
    """Creates short-lived kind 27235 tokens for the notifications backend."""

    def __init__(self, auth_service: AuthService, token_ttl_seconds: int = 60):
        self.auth_service = auth_service
        self.token_ttl = token_ttl_seconds
        self._cache: Dict[str, Nip98Token] = {}

    @property
    def can_create_tokens(self) -> bool:
        return self.auth_service.is_authenticated

    async def create_auth_token(
        self,
        url: str,
        method: HttpMethod | str = HttpMethod.GET,
        payload: Optional[str | bytes] = None,
    ) -> Optional[Nip98Token]:
        if not self.can_create_tokens:
            logger.debug("Skipping NIP-98 token for %s: not authenticated", url)
            return None
        try:
            verb = HttpMethod(str(getattr(method, "value", method)).upper()).value
        except ValueError:
            logger.warning("Unsupported HTTP method for NIP-98 token: %s", method)
            return None
        payload_hash = hash_payload(payload)
        # the signed payload tag pins the body, so tokens are per body too
        cache_key = f"{verb}:{url}:{payload_hash}"
        cached = self._cache.get(cache_key)
        if cached and not cached.is_expired:
            return cached

        try:
            normalized = normalize_url(url)
        except Nip98AuthError as exc:
            logger.warning("%s", exc)
            return None
        tags = [["u", normalized], ["method", verb], ["payload", payload_hash]]
        signed = await self.auth_service.create_and_sign_event(kinds.HTTP_AUTH, "", tags)
        if signed is None:
            logger.error("Failed to sign NIP-98 event for %s %s", verb, normalized)
            return None
        if first_tag_value(signed.tags, "u") != normalized or first_tag_value(signed.tags, "method") != verb:
            logger.error("Signed NIP-98 event does not match request %s %s", verb, normalized)
            return None

        now = time.time()
        token = Nip98Token(
            token=encode_token(signed),
            signed_event=signed,
            created_at=now,
            expires_at=now + self.token_ttl,
        )
        self._cache[cache_key] = token
        return token

    def clear_token_cache(self) -> None:
        self._cache.clear()
