import os
from typing import Optional
from bech32 import bech32_decode, convertbits, bech32_encode
from ecdsa import SigningKey, SECP256k1


class NostrKeyError(Exception):
    pass


def decode_nip19(value: str) -> str:
    hrp, data = bech32_decode(value)
    if hrp not in {"nsec", "npub"} or data is None:
        raise NostrKeyError("Invalid NIP-19 key")
    decoded = convertbits(data, 5, 8, False)
    if decoded is None:
        raise NostrKeyError("Failed to decode bech32 key")
    return bytes(decoded).hex()


def _encode(hrp: str, key_hex: str) -> str:
    try:
        raw = bytes.fromhex(key_hex)
    except ValueError as exc:
        raise NostrKeyError(f"Key is not hex: {key_hex[:8]}...") from exc
    data = convertbits(raw, 8, 5, True)
    if data is None:
        raise NostrKeyError(f"Failed to encode {hrp}")
    return bech32_encode(hrp, list(data))


def encode_npub(pubkey_hex: str) -> str:
    return _encode("npub", pubkey_hex)


def normalize_pubkey(value: str) -> str:
    """Accept an npub or hex public key and return hex."""

    value = value.strip()
    if value.startswith("npub1"):
        return decode_nip19(value)
    return value.lower()


def load_private_key(env_value: Optional[str] = None) -> SigningKey:
    key_value = env_value or os.getenv("NOSTR_NSEC") or os.getenv("NOSTR_SK_HEX")
    if not key_value:
        raise NostrKeyError("No private key configured")
    key_hex = key_value.strip()
    if key_hex.startswith("nsec"):
        key_hex = decode_nip19(key_hex)
    if len(key_hex) != 64:
        raise NostrKeyError("Private key must be 32-byte hex")
    try:
        return SigningKey.from_string(bytes.fromhex(key_hex), curve=SECP256k1)
    except ValueError as exc:
        raise NostrKeyError("Private key is not a valid secp256k1 scalar") from exc


def derive_pubkey_hex(sk: SigningKey) -> str:
    # Nostr identifies keys by the 32-byte x coordinate only.
    return sk.get_verifying_key().to_string("compressed")[1:].hex()
