"""
Identity / key manager.

An identity is an NATS nkey pair. Seeds are 32 random ed25519 bytes encoded
by nkeys as "S<role>..." strings; public keys are "<role>..." strings. Both
carry a CRC16 checksum and are base32 without padding.
"""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, Optional

import nacl.signing
import nkeys

from platform_component.errors import InvalidKeyError, KeyGenerationError

ROLE_USER = "user"

_ROLE_PREFIXES: dict[str, int] = {
    "operator": nkeys.PREFIX_BYTE_OPERATOR,
    "server": nkeys.PREFIX_BYTE_SERVER,
    "cluster": nkeys.PREFIX_BYTE_CLUSTER,
    "account": nkeys.PREFIX_BYTE_ACCOUNT,
    ROLE_USER: nkeys.PREFIX_BYTE_USER,
}

_RAW_KEY_LEN = 32


def _unb32(src: str) -> bytes:
    """Decode a base32 nkey and verify its checksum; returns prefix + key bytes."""
    padded = src + "=" * (-len(src) % 8)
    try:
        raw = base64.b32decode(padded)
    except (binascii.Error, ValueError) as exc:
        raise InvalidKeyError(f"invalid nkey encoding: {exc}") from exc
    if len(raw) < 3:
        raise InvalidKeyError("nkey too short")
    body, checksum = raw[:-2], int.from_bytes(raw[-2:], "little")
    if int.from_bytes(nkeys.crc16_checksum(body), "little") != checksum:
        raise InvalidKeyError("invalid nkey checksum")
    return body


def _role_prefix(role: str) -> int:
    try:
        return _ROLE_PREFIXES[role]
    except KeyError:
        raise InvalidKeyError(f"unknown key role: {role!r}") from None


def _role_for_prefix(prefix: int) -> Optional[str]:
    for role, p in _ROLE_PREFIXES.items():
        if p == prefix:
            return role
    return None


@dataclass(frozen=True, slots=True)
class Identity:
    """
    A component identity: role, public key and (optionally) the seed.

    Public-only identities carry no seed and cannot sign.
    """

    role: str
    public: str
    seed: Optional[bytes] = field(default=None, repr=False)
    pair: Any = field(default=None, repr=False, compare=False)

    @property
    def can_sign(self) -> bool:
        return self.pair is not None and self.seed is not None

    def sign(self, data: bytes) -> bytes:
        if not self.can_sign:
            raise InvalidKeyError(f"identity {self.public} has no seed to sign with")
        return self.pair.sign(data)


def _pair_from_seed(seed: bytes, role: str) -> Identity:
    pair = nkeys.from_seed(bytearray(seed))
    public = pair.public_key
    if isinstance(public, (bytes, bytearray)):
        public = bytes(public).decode("ascii")
    return Identity(role=role, public=public, seed=bytes(seed), pair=pair)


def generate(role: str = ROLE_USER) -> Identity:
    """Create a fresh nkey pair for role. Nothing is persisted."""
    prefix = _role_prefix(role)
    try:
        raw = bytes(nacl.signing.SigningKey.generate())
        return _pair_from_seed(nkeys.encode_seed(raw, prefix), role)
    except Exception as exc:
        raise KeyGenerationError(f"failed to generate key: {exc}") from exc


def from_existing(material: str | bytes, role: str = ROLE_USER, *, allow_seed: bool = True) -> Identity:
    """
    Build an identity from an encoded seed or public key.

    Raises InvalidKeyError if the material is empty, malformed, a seed where
    allow_seed is False, or tagged with a role other than role.
    """
    expected = _role_prefix(role)
    if isinstance(material, (bytes, bytearray)):
        try:
            material = bytes(material).decode("ascii")
        except UnicodeDecodeError as exc:
            raise InvalidKeyError("nkey must be ascii") from exc
    material = material.strip()
    if not material:
        raise InvalidKeyError("invalid nkey: empty")

    body = _unb32(material)

    if material[0] == "S":
        if not allow_seed:
            raise InvalidKeyError("expected a public key, got a seed")
        seed = material.encode("ascii")
        try:
            prefix, raw = nkeys.decode_seed(seed)
        except nkeys.NkeysError as exc:
            raise InvalidKeyError(f"invalid nkey seed: {exc!r}") from exc
        if len(raw) != _RAW_KEY_LEN:
            raise InvalidKeyError("invalid nkey seed length")
        if prefix != expected:
            raise InvalidKeyError(
                f"incompatible key role: expected {role}, got {_role_for_prefix(prefix) or prefix}"
            )
        try:
            return _pair_from_seed(seed, role)
        except nkeys.NkeysError as exc:
            raise InvalidKeyError(f"invalid nkey seed: {exc!r}") from exc

    if len(body) != _RAW_KEY_LEN + 1:
        raise InvalidKeyError("invalid public nkey length")
    if body[0] != expected:
        raise InvalidKeyError(
            f"incompatible key role: expected {role}, got {_role_for_prefix(body[0]) or body[0]}"
        )
    return Identity(role=role, public=material)


def is_valid_public_key(key: str, role: str = ROLE_USER) -> bool:
    try:
        from_existing(key, role, allow_seed=False)
    except InvalidKeyError:
        return False
    return True
