import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ecdsa import SigningKey, VerifyingKey, SECP256k1, BadSignatureError
from ecdsa.errors import MalformedPointError

Tag = List[str]


class NostrEventError(Exception):
    pass


@dataclass(frozen=True)
class Event:
    """A signed protocol event. Tags keep the flat list-of-lists wire form."""

    pubkey: str
    kind: int
    tags: List[Tag] = field(default_factory=list)
    content: str = ""
    created_at: int = 0
    id: str = ""
    sig: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        if not isinstance(data, dict):
            raise NostrEventError("Event payload must be an object")
        try:
            kind = int(data["kind"])
            created_at = int(data.get("created_at") or 0)
        except (KeyError, TypeError, ValueError) as exc:
            raise NostrEventError("Event kind and created_at must be numeric") from exc
        tags: List[Tag] = []
        for tag in data.get("tags") or []:
            if isinstance(tag, (list, tuple)) and tag:
                tags.append([str(item) for item in tag])
        return cls(
            pubkey=str(data.get("pubkey") or ""),
            kind=kind,
            tags=tags,
            content=str(data.get("content") or ""),
            created_at=created_at,
            id=str(data.get("id") or ""),
            sig=str(data.get("sig") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)


def build_event_template(pubkey: str, kind: int, content: str, tags: List[Tag]) -> Dict[str, Any]:
    return {
        "pubkey": pubkey,
        "created_at": int(time.time()),
        "kind": kind,
        "tags": [list(tag) for tag in tags],
        "content": content,
    }


def serialize_event(pubkey: str, created_at: int, kind: int, tags: List[List[str]], content: str) -> str:
    data = [0, pubkey, created_at, kind, tags, content]
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def compute_event_id(serialized_event: str) -> str:
    return hashlib.sha256(serialized_event.encode("utf-8")).hexdigest()


def sign_event(sk: SigningKey, event: Dict[str, Any]) -> Dict[str, Any]:
    serialized = serialize_event(event["pubkey"], event["created_at"], event["kind"], event["tags"], event["content"])
    event_id = compute_event_id(serialized)
    signature = sk.sign_digest(bytes.fromhex(event_id)).hex()
    event["id"] = event_id
    event["sig"] = signature
    return event


def verify_event(event: Dict[str, Any]) -> bool:
    try:
        serialized = serialize_event(event["pubkey"], event["created_at"], event["kind"], event.get("tags", []), event.get("content", ""))
        event_id = compute_event_id(serialized)
        if event_id != event.get("id"):
            return False
        x_only = bytes.fromhex(event["pubkey"])
        signature = bytes.fromhex(event["sig"])
    except (KeyError, TypeError, ValueError):
        return False
    # The y parity is not part of the pubkey, so try both points.
    for prefix in (b"\x02", b"\x03"):
        try:
            vk = VerifyingKey.from_string(prefix + x_only, curve=SECP256k1)
            if vk.verify_digest(signature, bytes.fromhex(event_id)):
                return True
        except (BadSignatureError, MalformedPointError, ValueError):
            continue
    return False


def first_tag(tags: Iterable[Tag], name: str) -> Optional[Tag]:
    for tag in tags:
        if tag and tag[0] == name:
            return tag
    return None


def first_tag_value(tags: Iterable[Tag], name: str) -> Optional[str]:
    """Value at position 1 of the first tag called ``name``, if it has one."""

    for tag in tags:
        if len(tag) > 1 and tag[0] == name:
            return tag[1]
    return None


def tag_values(tags: Iterable[Tag], name: str) -> List[str]:
    return [tag[1] for tag in tags if len(tag) > 1 and tag[0] == name]


def has_tag(tags: Iterable[Tag], expected: Tag) -> bool:
    return any(list(tag) == list(expected) for tag in tags)


def replace_tags(tags: Iterable[Tag], name: str, new_tag: Tag) -> List[Tag]:
    """Drop every tag called ``name`` and append ``new_tag`` once."""

    kept = [list(tag) for tag in tags if not (tag and tag[0] == name)]
    kept.append(list(new_tag))
    return kept


def addressable_coordinate(kind: int, pubkey: str, identifier: str) -> str:
    return f"{kind}:{pubkey}:{identifier}"
