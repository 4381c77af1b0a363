from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import timedelta
from typing import Any, Dict, Optional

from sessionguard.clock import Clock, SystemClock
from sessionguard.config import SigningAlgorithm
from sessionguard.logging import get_logger

logger = get_logger(__name__)

_DIGESTS = {
    SigningAlgorithm.HS256: hashlib.sha256,
    SigningAlgorithm.HS384: hashlib.sha384,
    SigningAlgorithm.HS512: hashlib.sha512,
}


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """HMAC-signed JWTs bound to one issuer, audience and algorithm."""

    def __init__(
        self,
        secret: str,
        *,
        algorithm: SigningAlgorithm = SigningAlgorithm.HS256,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Optional[Clock] = None,
    ) -> None:
        self._secret = secret.encode()
        self.algorithm = SigningAlgorithm(algorithm)
        self.issuer = issuer
        self.audience = audience
        self.leeway = timedelta(seconds=leeway_seconds)
        self.clock = clock or SystemClock()

    def _sign(self, signing_input: str) -> str:
        digest = _DIGESTS[self.algorithm]
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), digest).digest()
        )

    def encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": self.algorithm.value, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, subject: str, token_id: str, ttl_seconds: int, **claims: Any) -> str:
        """Mint a token for ``subject`` whose ``jti`` is ``token_id``."""
        now = self.clock.now()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "jti": token_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        }
        payload.update(claims)
        return self.encode(payload)

    def decode(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the verified claims, or None when any check fails."""
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Header algorithm must match exactly to rule out algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != self.algorithm.value:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        now_ts = self.clock.now().timestamp()
        if exp_ts <= now_ts - self.leeway.total_seconds():
            return None
        if not payload.get("jti") or not payload.get("sub"):
            return None
        return payload


__all__ = ["TokenSigner"]
