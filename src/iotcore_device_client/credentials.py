"""
JWT credentials for broker authentication.

The broker accepts a signed JWT as the MQTT password. Claims are the
issuance time, the expiration time and the project id as audience.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from iotcore_device_client.key_store import KeyAlgorithm, KeyEncoding, PrivateKey

logger = logging.getLogger(__name__)

JWT_MAX_SIZE = 1024
DEFAULT_TTL_S = 3600


class CredentialError(Exception):
    """Raised when a credential cannot be produced."""


class SigningError(CredentialError):
    pass


@dataclass(frozen=True, slots=True)
class Identity:
    project_id: str
    device_path: str

    @property
    def client_id(self) -> str:
        return self.device_path


@dataclass(frozen=True, slots=True)
class Credential:
    token: str = field(repr=False)
    issued_at: int
    ttl_s: int

    @property
    def expires_at(self) -> int:
        return self.issued_at + self.ttl_s

    def is_expired(self, now: float, margin_s: float = 0) -> bool:
        return now >= self.expires_at - margin_s


def _deserialize(key: PrivateKey) -> Any:
    if key.encoding is not KeyEncoding.PEM:
        raise SigningError(f"unsupported key encoding: {key.encoding}")
    try:
        loaded = serialization.load_pem_private_key(key.data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SigningError(f"could not deserialize private key: {exc}") from exc

    if key.algorithm is KeyAlgorithm.ES256:
        if not isinstance(loaded, ec.EllipticCurvePrivateKey) or not isinstance(
            loaded.curve, ec.SECP256R1
        ):
            raise SigningError("ES256 requires an EC private key on curve P-256")
    elif key.algorithm is KeyAlgorithm.RS256:
        if not isinstance(loaded, rsa.RSAPrivateKey):
            raise SigningError("RS256 requires an RSA private key")
    return loaded


def build_claims(identity: Identity, issued_at: int, ttl_s: int) -> dict[str, Any]:
    return {
        "iat": issued_at,
        "exp": issued_at + ttl_s,
        "aud": identity.project_id,
    }


def issue_credential(
    key: PrivateKey,
    identity: Identity,
    ttl_s: int = DEFAULT_TTL_S,
    *,
    clock: Callable[[], float] = time.time,
    max_token_size: int = JWT_MAX_SIZE,
) -> Credential:
    """
    Sign a JWT for identity with key, valid for ttl_s seconds from now.

    Raises ValueError for a non-positive ttl and SigningError when the key is
    rejected or the token does not fit in max_token_size bytes.
    """
    if ttl_s <= 0:
        raise ValueError("ttl_s must be positive")

    signing_key = _deserialize(key)
    issued_at = int(clock())
    claims = build_claims(identity, issued_at, ttl_s)
    try:
        token = jwt.encode(claims, signing_key, algorithm=key.algorithm.value)
    except (jwt.PyJWTError, ValueError, TypeError) as exc:
        raise SigningError(f"JWT signing failed: {exc}") from exc

    if len(token.encode("ascii")) > max_token_size:
        raise SigningError(
            f"signed token of {len(token)} bytes does not fit in "
            f"{max_token_size}-byte token buffer"
        )

    logger.debug("Issued %s JWT for project %s (ttl=%ss)", key.algorithm.value, identity.project_id, ttl_s)
    return Credential(token=token, issued_at=issued_at, ttl_s=ttl_s)


class CredentialIssuer:
    """Owns the device key and mints credentials for one identity."""

    def __init__(
        self,
        key: PrivateKey,
        identity: Identity,
        ttl_s: int = DEFAULT_TTL_S,
        *,
        clock: Callable[[], float] = time.time,
        max_token_size: int = JWT_MAX_SIZE,
    ) -> None:
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        self._key = key
        self.identity = identity
        self.ttl_s = ttl_s
        self.clock = clock
        self.max_token_size = max_token_size

    def issue(self) -> Credential:
        return issue_credential(
            self._key,
            self.identity,
            self.ttl_s,
            clock=self.clock,
            max_token_size=self.max_token_size,
        )
