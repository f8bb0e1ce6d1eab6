from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from divine.nostr.event import Event


class PublishErrorKind(str, Enum):
    not_authenticated = "not_authenticated"
    signing_failed = "signing_failed"
    publish_failed = "publish_failed"
    duplicate_in_flight = "duplicate_in_flight"
    timeout = "timeout"
    network_error = "network_error"
    malformed_response = "malformed_response"


@dataclass(frozen=True)
class PublishResult:
    success: bool
    error: Optional[str] = None
    error_kind: Optional[PublishErrorKind] = None
    event: Optional[Event] = None
    errors: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def ok(cls, event: Event) -> "PublishResult":
        return cls(success=True, event=event)

    @classmethod
    def failure(
        cls,
        kind: PublishErrorKind,
        message: str,
        event: Optional[Event] = None,
        errors: Optional[Dict[str, str]] = None,
    ) -> "PublishResult":
        return cls(success=False, error=message, error_kind=kind, event=event, errors=dict(errors or {}))

    @property
    def event_id(self) -> Optional[str]:
        return self.event.id if self.event else None
