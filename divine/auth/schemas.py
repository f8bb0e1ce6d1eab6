from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionMode(str, Enum):
    readonly = "readonly"
    nip46 = "nip46"
    local = "local"


class SessionData(BaseModel):
    """Who we are acting as, and how signatures get produced."""

    model_config = ConfigDict(frozen=True)

    session_mode: SessionMode
    pubkey_hex: Optional[str] = None
    npub: Optional[str] = None
    started_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    expires_at: Optional[dt.datetime] = None
    # bunker sessions only
    signer_pubkey: Optional[str] = Field(default=None, repr=False)
    relay: Optional[str] = None
    client_secret: Optional[str] = Field(default=None, repr=False)

    def is_expired(self, now: Optional[dt.datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or dt.datetime.now(dt.timezone.utc)) >= self.expires_at

    @property
    def can_sign(self) -> bool:
        if self.session_mode is SessionMode.readonly or not self.pubkey_hex:
            return False
        return not self.is_expired()

    @property
    def display_name(self) -> str:
        ident = self.npub or self.pubkey_hex or "anonymous"
        if len(ident) > 20:
            ident = f"{ident[:12]}…{ident[-6:]}"
        return f"{ident} ({self.session_mode.value})"
