import logging
from typing import List, Optional
from urllib.parse import parse_qs, urlparse

from divine.auth.schemas import SessionData, SessionMode
from divine.nostr.event import Event, NostrEventError, build_event_template
from divine.nostr.key import NostrKeyError, decode_nip19, encode_npub
from divine.nostr.signers import BaseSigner, LocalSigner, Nip46Signer, SignerError, new_nip46_session

logger = logging.getLogger(__name__)


class AuthError(Exception):
    pass


def parse_bunker_uri(uri: str, default_relay: str) -> dict[str, str]:
    parsed = urlparse(uri)
    if parsed.scheme not in {"bunker", "nostr+tcp", "nostr+ws"}:
        raise AuthError("Invalid bunker URI")
    signer_pubkey = parsed.netloc or parsed.path.lstrip("/")
    if not signer_pubkey:
        raise AuthError("Bunker URI has no signer pubkey")
    query = parse_qs(parsed.query)
    relay = query.get("relay", [default_relay])[0]
    return {"signer_pubkey": signer_pubkey, "relay": relay}


class AuthService:
    """Holds the current identity and signs events on its behalf."""

    def __init__(self, signer: Optional[BaseSigner] = None, nip46_default_relay: str = "wss://relay.nsec.app"):
        self._signer: Optional[BaseSigner] = None
        self._session: Optional[SessionData] = None
        self.nip46_default_relay = nip46_default_relay
        if signer is not None:
            mode = SessionMode.nip46 if isinstance(signer, Nip46Signer) else SessionMode.local
            self._activate(signer, mode)

    @property
    def session(self) -> Optional[SessionData]:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return bool(self._signer and self._session and self._session.can_sign)

    @property
    def current_public_key_hex(self) -> Optional[str]:
        return self._session.pubkey_hex if self._session else None

    def _activate(self, signer: BaseSigner, mode: SessionMode, **extra) -> SessionData:
        pubkey = signer.get_public_key()
        try:
            npub = encode_npub(pubkey)
        except NostrKeyError:
            npub = None
        self._signer = signer
        self._session = SessionData(session_mode=mode, pubkey_hex=pubkey, npub=npub, **extra)
        logger.info("Authenticated as %s", self._session.display_name)
        return self._session

    def login_with_secret(self, secret: str) -> SessionData:
        try:
            signer = LocalSigner(secret)
        except NostrKeyError as exc:
            raise AuthError(f"Invalid private key: {exc}") from exc
        return self._activate(signer, SessionMode.local)

    def login_with_bunker(self, uri: str) -> SessionData:
        params = parse_bunker_uri(uri, self.nip46_default_relay)
        signer_pubkey = params["signer_pubkey"]
        try:
            signer_hex = decode_nip19(signer_pubkey) if signer_pubkey.startswith("npub") else signer_pubkey
        except NostrKeyError as exc:
            raise AuthError("Invalid signer key") from exc
        session = new_nip46_session(signer_hex, params["relay"])
        return self._activate(
            Nip46Signer(session),
            SessionMode.nip46,
            signer_pubkey=signer_hex,
            relay=session.relay,
            client_secret=session.client_secret,
        )

    def login_readonly(self, pubkey: str) -> SessionData:
        """Track a pubkey without any ability to sign."""

        self._signer = None
        self._session = SessionData(session_mode=SessionMode.readonly, pubkey_hex=pubkey)
        return self._session

    def logout(self) -> None:
        self._signer = None
        self._session = None

    async def create_and_sign_event(self, kind: int, content: str, tags: List[List[str]]) -> Optional[Event]:
        """Sign an event as the current identity; None when that is not possible."""

        if not self.is_authenticated or self._signer is None:
            logger.warning("Cannot sign kind %s event: not authenticated", kind)
            return None
        template = build_event_template(self._signer.get_public_key(), kind, content, tags)
        try:
            signed = await self._signer.sign_event(template)
            return Event.from_dict(signed)
        except (SignerError, NostrEventError) as exc:
            logger.error("Signing kind %s event failed: %s", kind, exc)
            return None
