#!/usr/bin/env python3
"""
Key derivation and envelope encryption for change-log replication.

A seed phrase is stretched with scrypt into 64 bytes: the first half is the
ChaCha20-Poly1305 key that seals change records, the second half signs
relay requests. The relay only ever sees envelopes.
"""

from base64 import b64decode, b64encode
from dataclasses import dataclass
from hashlib import scrypt, sha256
from hmac import HMAC
from os import urandom
from time import time
from typing import Any, Dict
import json

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from config import get_logger
from errors import CryptoError, InvalidInputError

# Module-specific logger
logger = get_logger("vault_crypto")

# Fixed KDF parameters: every device must derive the same keys from a seed
KDF_SALT = b"digest-change-log-v1"
KDF_N = 2 ** 14
KDF_R = 8
KDF_P = 1
KEY_SIZE = 32
NONCE_SIZE = 12
ENVELOPE_VERSION = 1
ENVELOPE_ALGORITHM = "chacha20poly1305"

CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


@dataclass(frozen=True)
class VaultKeys:
    encryption_key: bytes
    auth_key: bytes

    def to_hex(self) -> str:
        return (self.encryption_key + self.auth_key).hex()

    @classmethod
    def from_hex(cls, value: str) -> "VaultKeys":
        try:
            raw = bytes.fromhex(value or "")
        except ValueError as e:
            raise InvalidInputError(f"invalid derived key: {e}") from e
        if len(raw) != KEY_SIZE * 2:
            raise InvalidInputError(f"invalid derived key: expected {KEY_SIZE * 2} bytes, got {len(raw)}")
        return cls(encryption_key=raw[:KEY_SIZE], auth_key=raw[KEY_SIZE:])


def normalize_seed(seed: str) -> str:
    """Case-fold and collapse whitespace so the same phrase typed twice matches."""
    return " ".join((seed or "").split()).lower()


def derive_keys(seed: str) -> VaultKeys:
    """Derive the encryption and auth keys from a seed phrase.

    Raises:
        InvalidInputError: for an empty seed
    """
    phrase = normalize_seed(seed)
    if not phrase:
        raise InvalidInputError("seed phrase is required")
    material = scrypt(
        phrase.encode("utf-8"),
        salt=KDF_SALT,
        n=KDF_N,
        r=KDF_R,
        p=KDF_P,
        dklen=KEY_SIZE * 2,
    )
    return VaultKeys(encryption_key=material[:KEY_SIZE], auth_key=material[KEY_SIZE:])


def build_aad(user_id: str, device_id: str, entity: str, entity_id: str, op: str, ts: str) -> bytes:
    """Associated data binding a ciphertext to its origin and record identity."""
    return json.dumps([user_id, device_id, entity, entity_id, op, ts], separators=(",", ":")).encode("utf-8")


def seal(keys: VaultKeys, plaintext: bytes, aad: bytes) -> Dict[str, Any]:
    """Encrypt plaintext into a JSON-safe envelope."""
    nonce = urandom(NONCE_SIZE)
    ciphertext = ChaCha20Poly1305(keys.encryption_key).encrypt(nonce, plaintext, aad)
    return {
        "v": ENVELOPE_VERSION,
        "alg": ENVELOPE_ALGORITHM,
        "nonce": b64encode(nonce).decode("ascii"),
        "ct": b64encode(ciphertext).decode("ascii"),
        "aad": b64encode(aad).decode("ascii"),
    }


def open_envelope(keys: VaultKeys, envelope: Dict[str, Any]) -> tuple[bytes, bytes]:
    """Decrypt an envelope.

    Returns:
        (plaintext, aad carried by the envelope)

    Raises:
        CryptoError: for a malformed envelope or a failed authentication tag
    """
    if not isinstance(envelope, dict):
        raise CryptoError("malformed envelope: not an object")
    if envelope.get("v") != ENVELOPE_VERSION or envelope.get("alg") != ENVELOPE_ALGORITHM:
        raise CryptoError(f"unsupported envelope version {envelope.get('v')}/{envelope.get('alg')}")
    try:
        nonce = b64decode(envelope["nonce"], validate=True)
        ciphertext = b64decode(envelope["ct"], validate=True)
        aad = b64decode(envelope["aad"], validate=True)
    except (KeyError, TypeError, ValueError) as e:
        raise CryptoError(f"malformed envelope: {e}") from e
    if len(nonce) != NONCE_SIZE:
        raise CryptoError("malformed envelope: bad nonce length")
    try:
        plaintext = ChaCha20Poly1305(keys.encryption_key).decrypt(nonce, ciphertext, aad)
    except InvalidTag as e:
        raise CryptoError("decryption failed: authentication tag mismatch") from e
    return plaintext, aad


def sign_body(keys: VaultKeys, body: bytes) -> str:
    """HMAC-SHA256 of a request body, base64 encoded."""
    return b64encode(HMAC(keys.auth_key, body, sha256).digest()).decode("utf-8")


def new_device_id() -> str:
    """A 26-character ULID: 48-bit millisecond timestamp plus 80 random bits."""
    value = (int(time() * 1000) & ((1 << 48) - 1)) << 80 | int.from_bytes(urandom(10), "big")
    chars = []
    for _ in range(26):
        chars.append(CROCKFORD_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))
