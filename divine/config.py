import logging
import os
from pydantic import BaseModel, ValidationError
from dotenv import load_dotenv

load_dotenv()
logger = logging.getLogger(__name__)


def get_env(name: str) -> str | None:
    value = os.getenv(name)
    return value.strip() if value else None


def _env_flag(name: str, default: str = "") -> bool:
    return (get_env(name) or default).lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    relay_urls: list[str] = ["wss://relay.divine.video"]
    default_relay_hint: str = get_env("DEFAULT_RELAY_HINT") or "wss://relay.divine.video"
    nostr_secret: str | None = get_env("NOSTR_NSEC") or get_env("NOSTR_SK_HEX")
    bunker_uri: str | None = get_env("NOSTR_BUNKER_URI")
    nip46_default_relay: str = get_env("NIP46_RELAY") or "wss://relay.nsec.app"
    notifications_api_url: str | None = get_env("DIVINE_NOTIFICATIONS_API") or "https://relay.divine.video"
    publish_timeout_seconds: float = 5
    query_timeout_seconds: float = 10
    http_timeout_seconds: float = 15
    nip98_token_ttl_seconds: int = 60
    client_tag: str = "diVine"
    debug: bool = _env_flag("DEBUG")
    log_level: str = (get_env("LOG_LEVEL") or "INFO").upper()


try:
    settings = Settings(
        relay_urls=[u.strip() for u in (get_env("NOSTR_RELAYS") or "wss://relay.divine.video").split(",") if u.strip()],
        publish_timeout_seconds=get_env("PUBLISH_TIMEOUT") or 5,
        query_timeout_seconds=get_env("QUERY_TIMEOUT") or 10,
        http_timeout_seconds=get_env("HTTP_TIMEOUT") or 15,
        nip98_token_ttl_seconds=get_env("NIP98_TOKEN_TTL") or 60,
    )
except ValidationError:
    logger.warning("Invalid environment configuration; falling back to defaults.")
    settings = Settings()

if not settings.relay_urls:
    logger.warning("NOSTR_RELAYS is empty; publishing will fail until a relay is configured.")

if settings.nostr_secret and settings.bunker_uri:
    logger.warning("Both NOSTR_NSEC and NOSTR_BUNKER_URI are set; the local key takes precedence.")
