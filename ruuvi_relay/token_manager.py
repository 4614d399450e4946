"""JWT token manager with RS256/ES256 signing."""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

LOGGER = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("RS256", "ES256")


class TokenError(RuntimeError):
    """Raised when a token cannot be signed."""


@dataclass(slots=True)
class TokenCredentials:
    """JWT token with metadata."""

    jwt: str
    expires_at: datetime
    issued_at: datetime


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


class JwtSigner:
    """Signs compact JWS tokens with an RSA or P-256 private key."""

    def __init__(self, private_key: Any, algorithm: str = "RS256") -> None:
        algorithm = algorithm.upper()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise TokenError(f"Unsupported JWT algorithm {algorithm!r}")
        if algorithm == "RS256" and not isinstance(private_key, rsa.RSAPrivateKey):
            raise TokenError("RS256 requires an RSA private key")
        if algorithm == "ES256" and not (
            isinstance(private_key, ec.EllipticCurvePrivateKey)
            and isinstance(private_key.curve, ec.SECP256R1)
        ):
            raise TokenError("ES256 requires a P-256 private key")

        self.algorithm = algorithm
        self._private_key = private_key

    @classmethod
    def from_pem_file(cls, path: Path, algorithm: str = "RS256") -> "JwtSigner":
        try:
            pem = path.read_bytes()
        except OSError as exc:
            raise TokenError(f"Unable to read private key {path}: {exc}") from exc

        try:
            private_key = serialization.load_pem_private_key(pem, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise TokenError(f"Unable to load private key {path}: {exc}") from exc

        return cls(private_key, algorithm)

    def sign(self, claims: Mapping[str, Any]) -> str:
        header = {"alg": self.algorithm, "typ": "JWT"}
        signing_input = ".".join(
            (
                _b64url(json.dumps(header, separators=(",", ":")).encode("utf-8")),
                _b64url(json.dumps(dict(claims), separators=(",", ":")).encode("utf-8")),
            )
        )
        return f"{signing_input}.{_b64url(self._signature(signing_input.encode('ascii')))}"

    def _signature(self, message: bytes) -> bytes:
        if self.algorithm == "RS256":
            return self._private_key.sign(message, padding.PKCS1v15(), hashes.SHA256())

        # JWS wants the raw r||s form rather than DER
        der = self._private_key.sign(message, ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        return r.to_bytes(32, "big") + s.to_bytes(32, "big")


class TokenManager:
    """Mints session tokens and tracks when the current one must be renewed.

    The token is considered due for renewal once ``expires_at`` minus the
    safety margin has passed. Renewal itself is driven by the session
    manager, which disconnects and reconnects with a fresh token.
    """

    def __init__(
        self,
        signer,
        *,
        audience: str,
        lifetime_seconds: int = 3600,
        safety_margin_seconds: int = 60,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        if safety_margin_seconds >= lifetime_seconds:
            raise TokenError("Token safety margin must be shorter than its lifetime")

        self._signer = signer
        self.audience = audience
        self.lifetime = timedelta(seconds=lifetime_seconds)
        self.safety_margin = timedelta(seconds=safety_margin_seconds)
        self._clock = clock
        self._current_token: Optional[TokenCredentials] = None

    @property
    def current(self) -> Optional[TokenCredentials]:
        return self._current_token

    def issue_token(self) -> TokenCredentials:
        """Sign a fresh token and make it current."""
        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + self.lifetime
        claims = {
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "aud": self.audience,
        }

        try:
            jwt = self._signer.sign(claims)
        except TokenError:
            raise
        except (ValueError, TypeError) as exc:
            raise TokenError(f"Unable to sign token: {exc}") from exc

        self._current_token = TokenCredentials(
            jwt=jwt, issued_at=issued_at, expires_at=expires_at
        )
        LOGGER.info("JWT token issued, expires at %s", expires_at.isoformat())
        return self._current_token

    def renewal_deadline(self) -> Optional[datetime]:
        if not self._current_token:
            return None
        return self._current_token.expires_at - self.safety_margin

    def renewal_due(self, now: Optional[datetime] = None) -> bool:
        deadline = self.renewal_deadline()
        if deadline is None:
            return True
        return (now or self._clock()) >= deadline

    def get_mqtt_credentials(self) -> tuple[str, str]:
        """Get current MQTT credentials: (username, jwt_token).

        The broker ignores the username and authenticates the JWT password.
        """
        if not self._current_token:
            raise TokenError("Token not issued. Call issue_token() first.")
        return "unused", self._current_token.jwt
