from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from edulearn_chat.logging import get_logger
from edulearn_chat.service.errors import AuthenticationError, ConfigurationError

logger = get_logger(__name__)

# Claims that may carry the user identifier, in lookup order
USER_ID_CLAIMS = ("userId", "sub")


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: Optional[str] = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def encode_token(payload: dict[str, Any], secret: str) -> str:
    """Encode an HS256 JWT.

    Token issuance belongs to the external auth service; this exists for
    tests and the developer minting script.
    """
    header = {"alg": "HS256", "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(secret, signing_input)}"


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class IdentityVerifier:
    """Verifies bearer credentials signed by the LMS auth service."""

    def __init__(self, secret: Optional[str], *, clock_skew_seconds: int = 30) -> None:
        self.secret = secret
        self._clock_skew_leeway = timedelta(seconds=max(0, clock_skew_seconds))

    def verify(self, authorization: Optional[str]) -> Identity:
        """Return the identity carried by ``authorization`` or raise.

        Raises:
            AuthenticationError: header absent/malformed or token invalid
            ConfigurationError: no signing secret configured
        """
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Unauthorized. Please log in.")
        if not self.secret:
            raise ConfigurationError("JWT_SECRET environment variable is not set")
        payload = self.decode(token)
        if payload is None:
            raise AuthenticationError("Unauthorized. Please log in.")
        user_id = self._user_id_from(payload)
        if not user_id:
            logger.warning("jwt_missing_user_claim", claims=sorted(payload.keys()))
            raise AuthenticationError("Unauthorized. Please log in.")
        role = payload.get("role")
        return Identity(user_id=user_id, role=role if isinstance(role, str) else None)

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Validate signature and time claims, returning the payload or None."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
            if not isinstance(header, dict) or header.get("alg") != "HS256":
                logger.warning(
                    "jwt_invalid_algorithm",
                    alg=header.get("alg") if isinstance(header, dict) else None,
                )
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(_sign(self.secret or "", signing_input), sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None

        now = time.time()
        leeway = self._clock_skew_leeway.total_seconds()
        exp = payload.get("exp")
        if exp is not None:
            try:
                if float(exp) <= now - leeway:
                    return None
            except (TypeError, ValueError):
                return None
        nbf = payload.get("nbf")
        if nbf is not None:
            try:
                if float(nbf) > now + leeway:
                    return None
            except (TypeError, ValueError):
                return None
        return payload

    @staticmethod
    def _user_id_from(payload: dict[str, Any]) -> Optional[str]:
        for claim in USER_ID_CLAIMS:
            value = payload.get(claim)
            if isinstance(value, (str, int)) and not isinstance(value, bool):
                text = str(value).strip()
                if text:
                    return text
        return None
