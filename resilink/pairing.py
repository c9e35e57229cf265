"""Signed single-use pairing tokens and their QR rendering.

A token is ``<payload>.<signature>`` where both halves are unpadded urlsafe
base64: the payload is compact JSON describing how to reach the host, the
signature an HMAC-SHA256 of the encoded payload under the issuer's secret.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

import qrcode
import qrcode.image.svg
from qrcode.constants import ERROR_CORRECT_H

logger = logging.getLogger(__name__)

TOKEN_TYPE = "soundboard_connection"
TOKEN_VERSION = 1


class PairingError(Exception):
    """Base class for rejected pairing tokens."""


class InvalidPairingToken(PairingError):
    """Malformed token or bad signature."""


class ExpiredPairingToken(PairingError):
    pass


class PairingTokenAlreadyUsed(PairingError):
    pass


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


@dataclass(frozen=True, slots=True)
class PairingGrant:
    """What a successful redemption hands back to the caller."""

    session_token: str
    host: str
    port: int
    name: str
    expires_at: float
    claims: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_token": self.session_token,
            "host": self.host,
            "port": self.port,
            "name": self.name,
            "expires_at": self.expires_at,
        }


@dataclass(frozen=True, slots=True)
class PairingCode:
    token: str
    session_token: str
    expires_at: float
    issued_at: float
    svg: str
    text: str
    size: int
    claims: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "expires_at": self.expires_at,
            "issued_at": self.issued_at,
            "svg": self.svg,
            "text": self.text,
            "size": self.size,
            "error_correction": "H",
            "server": {
                "name": self.claims.get("name"),
                "address": self.claims.get("host"),
                "port": self.claims.get("port"),
            },
        }


def render_qr(data: str, *, size: int = 256, border: int = 2) -> Tuple[str, str, int]:
    """Render ``data`` as an SVG document and as terminal text.

    Returns ``(svg, text, modules)``. ``size`` is a pixel hint used to pick the
    box size; the SVG scales freely.
    """
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_H, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    modules = qr.modules_count
    qr.box_size = max(1, size // (modules + 2 * border))

    image = qr.make_image(image_factory=qrcode.image.svg.SvgPathImage)
    raw = io.BytesIO()
    image.save(raw)
    svg = raw.getvalue().decode("utf-8")

    buffer = io.StringIO()
    qr.print_ascii(out=buffer, invert=True)
    return svg, buffer.getvalue(), modules


class PairingTokenIssuer:
    """Issue and redeem pairing tokens.

    Redemption is single-use: the embedded nonce is remembered until the token
    would have expired anyway, after which it is forgotten.
    """

    def __init__(self, secret: Optional[str] = None, *, clock: Callable[[], float] = time.time) -> None:
        if secret:
            self._secret = secret.encode("utf-8")
        else:
            self._secret = secrets.token_bytes(32)
            logger.debug("No pairing secret configured; generated an ephemeral one")
        self._clock = clock
        self._redeemed: Dict[str, float] = {}
        self.issued_count = 0
        self.redeemed_count = 0

    def issue(
        self,
        *,
        host: str,
        port: int,
        name: str,
        expiry_hours: float = 24.0,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, Dict[str, Any]]:
        if expiry_hours < 0:
            raise ValueError("expiry_hours must not be negative")
        now = self._clock()
        claims: Dict[str, Any] = {
            "type": TOKEN_TYPE,
            "v": TOKEN_VERSION,
            "name": name,
            "host": host,
            "port": port,
            "session": secrets.token_hex(16),
            "nonce": secrets.token_urlsafe(12),
            "iat": now,
            "exp": now + expiry_hours * 3600.0,
        }
        if extra:
            claims.update({key: value for key, value in extra.items() if key not in claims})
        body = _b64encode(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8"))
        token = f"{body}.{self._sign(body)}"
        self.issued_count += 1
        logger.info("Issued pairing token for %s:%s (expires in %.1fh)", host, port, expiry_hours)
        return token, claims

    def generate_code(
        self,
        *,
        host: str,
        port: int,
        name: str,
        expiry_hours: float = 24.0,
        size: int = 256,
        extra: Optional[Dict[str, Any]] = None,
    ) -> PairingCode:
        token, claims = self.issue(host=host, port=port, name=name, expiry_hours=expiry_hours, extra=extra)
        svg, text, _ = render_qr(token, size=size)
        return PairingCode(
            token=token,
            session_token=claims["session"],
            expires_at=claims["exp"],
            issued_at=claims["iat"],
            svg=svg,
            text=text,
            size=size,
            claims=claims,
        )

    def verify(self, token: str) -> Dict[str, Any]:
        """Check signature and expiry without consuming the token."""
        claims = self._decode(token)
        if self._clock() >= float(claims["exp"]):
            raise ExpiredPairingToken("pairing token has expired")
        return claims

    def redeem(self, token: str) -> PairingGrant:
        claims = self.verify(token)
        self._prune()
        nonce = claims["nonce"]
        if nonce in self._redeemed:
            raise PairingTokenAlreadyUsed("pairing token was already redeemed")
        self._redeemed[nonce] = float(claims["exp"])
        self.redeemed_count += 1
        logger.info("Pairing token redeemed for %s:%s", claims["host"], claims["port"])
        return PairingGrant(
            session_token=claims["session"],
            host=claims["host"],
            port=int(claims["port"]),
            name=claims["name"],
            expires_at=float(claims["exp"]),
            claims=claims,
        )

    def _decode(self, token: str) -> Dict[str, Any]:
        if not isinstance(token, str) or token.count(".") != 1:
            raise InvalidPairingToken("malformed pairing token")
        body, signature = token.split(".")
        if not hmac.compare_digest(signature.encode("utf-8"), self._sign(body).encode("ascii")):
            raise InvalidPairingToken("pairing token signature mismatch")
        try:
            claims = json.loads(_b64decode(body))
        except (binascii.Error, ValueError) as exc:
            raise InvalidPairingToken("undecodable pairing token") from exc
        if not isinstance(claims, dict) or claims.get("type") != TOKEN_TYPE:
            raise InvalidPairingToken("not a pairing token")
        for name in ("host", "port", "session", "nonce", "exp", "name"):
            if name not in claims:
                raise InvalidPairingToken(f"pairing token is missing {name!r}")
        return claims

    def _sign(self, body: str) -> str:
        digest = hmac.new(self._secret, body.encode("utf-8"), hashlib.sha256).digest()
        return _b64encode(digest)

    def _prune(self) -> None:
        now = self._clock()
        for nonce in [nonce for nonce, expires in self._redeemed.items() if expires <= now]:
            del self._redeemed[nonce]


__all__ = [
    "ExpiredPairingToken",
    "InvalidPairingToken",
    "PairingCode",
    "PairingError",
    "PairingGrant",
    "PairingTokenAlreadyUsed",
    "PairingTokenIssuer",
    "render_qr",
]
