import asyncio
import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

import websockets

from divine.nostr.event import sign_event as sign_with_key
from divine.nostr.key import derive_pubkey_hex, load_private_key

logger = logging.getLogger(__name__)


class SignerError(Exception):
    pass


class BaseSigner:
    def get_public_key(self) -> str:
        raise NotImplementedError

    async def sign_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class LocalSigner(BaseSigner):
    """Signs in-process with a key loaded from hex or nsec."""

    def __init__(self, secret: Optional[str] = None):
        self._sk = load_private_key(secret)
        self._pubkey = derive_pubkey_hex(self._sk)

    def get_public_key(self) -> str:
        return self._pubkey

    async def sign_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return sign_with_key(self._sk, {**event, "pubkey": self._pubkey})


@dataclass
class Nip46Session:
    client_secret: str
    signer_pubkey: str
    relay: str


class Nip46Transport:
    """One request, one response over the bunker relay."""

    def __init__(self, relay_url: str, timeout_seconds: float = 10):
        self.relay_url = relay_url
        self.timeout = timeout_seconds

    async def send_request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        async with websockets.connect(self.relay_url, open_timeout=self.timeout) as ws:
            await ws.send(json.dumps(message))
            raw = await asyncio.wait_for(ws.recv(), timeout=self.timeout)
            return json.loads(raw)


class Nip46Signer(BaseSigner):
    """Remote bunker signer. The bunker owns the key; we only relay requests.

    The connection can be paused while the host app is in the background;
    signing while paused fails fast instead of waiting on a dead socket.
    """

    def __init__(self, session: Nip46Session, transport: Optional[Nip46Transport] = None):
        self.session = session
        self.transport = transport or Nip46Transport(session.relay)
        self.paused = False

    def get_public_key(self) -> str:
        return self.session.signer_pubkey

    def pause(self) -> None:
        logger.debug("Pausing remote signer %s", self.session.signer_pubkey[:8])
        self.paused = True

    def resume(self) -> None:
        logger.debug("Resuming remote signer %s", self.session.signer_pubkey[:8])
        self.paused = False

    async def sign_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        if self.paused:
            raise SignerError("Remote signer is paused")
        unsigned = {**event, "pubkey": event.get("pubkey") or self.session.signer_pubkey}
        request = {"id": secrets.token_hex(8), "method": "sign_event", "params": [json.dumps(unsigned)]}
        try:
            response = await self.transport.send_request(request)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException, json.JSONDecodeError) as exc:
            raise SignerError("Remote signer unavailable") from exc
        if isinstance(response, dict) and response.get("error"):
            raise SignerError(f"Remote signer refused: {response['error']}")
        result = response.get("result") if isinstance(response, dict) else None
        if isinstance(result, str):
            try:
                result = json.loads(result)
            except json.JSONDecodeError as exc:
                raise SignerError("Remote signer returned malformed event") from exc
        if not isinstance(result, dict) or not result.get("sig"):
            raise SignerError("Remote signer error")
        return result


def new_nip46_session(signer_pubkey: str, relay: str) -> Nip46Session:
    return Nip46Session(client_secret=secrets.token_hex(32), signer_pubkey=signer_pubkey, relay=relay)
