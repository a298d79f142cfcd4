from __future__ import annotations

import hashlib
import json
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import jwt

from peaceverse.config import Settings
from peaceverse.logging import get_logger
from peaceverse.service.errors import TokenExpired, TokenInvalid
from peaceverse.storage.models import Role, utcnow

logger = get_logger(__name__)

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"
MAX_RETAINED_KEYS = 5


def parse_key_pool(raw: str) -> List[Tuple[str, str]]:
    """Parse ``{"kid": "secret", ...}`` or ``kid:secret,kid:secret``.

    Order is preserved; the first entry is the active signing key.
    """
    raw = raw.strip()
    if raw.startswith("{"):
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError("key pool is not valid JSON") from exc
        if not isinstance(obj, dict) or not obj:
            raise ValueError("key pool must be a non-empty JSON object")
        return [(str(k), str(v)) for k, v in obj.items()]
    pairs: List[Tuple[str, str]] = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        if ":" not in item:
            raise ValueError("key pool entries must look like kid:secret")
        kid, secret = item.split(":", 1)
        if not kid.strip() or not secret.strip():
            raise ValueError("key pool entries need both a kid and a secret")
        pairs.append((kid.strip(), secret.strip()))
    if not pairs:
        raise ValueError("key pool is empty")
    return pairs


def derive_kid(secret: str) -> str:
    """Deterministic kid so every worker sharing a secret agrees on it."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


class KeyRing:
    """Ordered signing keys for one token class, newest first."""

    def __init__(
        self, keys: List[Tuple[str, str]], *, max_keys: int = MAX_RETAINED_KEYS
    ) -> None:
        if not keys:
            raise ValueError("a key ring needs at least one key")
        self.max_keys = max_keys
        self._lock = threading.Lock()
        self._keys: List[Tuple[str, str]] = list(keys)[:max_keys]

    @classmethod
    def from_config(cls, secret: Optional[str], pool: Optional[str]) -> "KeyRing":
        if pool:
            return cls(parse_key_pool(pool))
        if not secret:
            raise ValueError("either a secret or a key pool is required")
        return cls([(derive_kid(secret), secret)])

    @property
    def active(self) -> Tuple[str, str]:
        with self._lock:
            return self._keys[0]

    @property
    def kids(self) -> List[str]:
        with self._lock:
            return [kid for kid, _ in self._keys]

    def secret_for(self, kid: str) -> Optional[str]:
        with self._lock:
            for candidate, secret in self._keys:
                if candidate == kid:
                    return secret
        return None

    def rotate(self) -> str:
        """Add a fresh random key as the signer and drop keys past retention."""
        kid = secrets.token_hex(8)
        with self._lock:
            self._keys.insert(0, (kid, secrets.token_urlsafe(48)))
            dropped = self._keys[self.max_keys :]
            del self._keys[self.max_keys :]
        logger.info("signing_key_rotated", kid=kid, dropped=[k for k, _ in dropped])
        return kid

    def secret_values(self) -> set[str]:
        with self._lock:
            return {secret for _, secret in self._keys}


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    type: str
    exp: datetime
    iat: datetime
    role: Optional[Role] = None
    jti: Optional[str] = None


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_jti: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class TokenService:
    """Mints and verifies access/refresh JWTs from two independent key rings."""

    def __init__(
        self,
        settings: Settings,
        *,
        access_keys: Optional[KeyRing] = None,
        refresh_keys: Optional[KeyRing] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.access_keys = access_keys or KeyRing.from_config(
            settings.access_token_secret, settings.access_token_keys
        )
        self.refresh_keys = refresh_keys or KeyRing.from_config(
            settings.refresh_token_secret, settings.refresh_token_keys
        )
        if self.access_keys.secret_values() & self.refresh_keys.secret_values():
            raise ValueError("access and refresh token keys must differ")
        self.clock = clock
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)

    def _encode(
        self, ring: KeyRing, claims: Dict[str, Any], ttl: timedelta
    ) -> Tuple[str, datetime]:
        now = self.clock()
        expires_at = now + ttl
        kid, secret = ring.active
        payload = {
            **claims,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        token = jwt.encode(payload, secret, algorithm=ALGORITHM, headers={"kid": kid})
        return token, expires_at

    def issue_access_token(self, user_id: str, role: Role) -> str:
        token, _ = self._encode(
            self.access_keys,
            {"sub": user_id, "role": Role(role).value, "type": ACCESS},
            self.access_ttl,
        )
        return token

    def issue_refresh_token(self, user_id: str) -> IssuedRefreshToken:
        jti = secrets.token_hex(16)
        token, expires_at = self._encode(
            self.refresh_keys,
            {"sub": user_id, "jti": jti, "type": REFRESH},
            self.refresh_ttl,
        )
        return IssuedRefreshToken(token=token, jti=jti, expires_at=expires_at)

    def issue_pair(self, user_id: str, role: Role) -> TokenPair:
        access_token, access_expires_at = self._encode(
            self.access_keys,
            {"sub": user_id, "role": Role(role).value, "type": ACCESS},
            self.access_ttl,
        )
        refresh = self.issue_refresh_token(user_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh.token,
            refresh_jti=refresh.jti,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    def _decode(self, token: str, ring: KeyRing, expected_type: str) -> TokenClaims:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise TokenInvalid() from exc
        kid = header.get("kid")
        secret = ring.secret_for(kid) if isinstance(kid, str) else None
        if secret is None:
            logger.info("token_kid_unknown", kind=expected_type, kid=kid)
            raise TokenInvalid()
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[ALGORITHM],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
                leeway=self.settings.token_leeway_seconds,
                options={"require": ["exp", "iat", "sub", "type"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except jwt.PyJWTError as exc:
            raise TokenInvalid() from exc
        if payload.get("type") != expected_type:
            raise TokenInvalid()
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise TokenInvalid()
        role: Optional[Role] = None
        if expected_type == ACCESS:
            try:
                role = Role(payload.get("role"))
            except ValueError as exc:
                raise TokenInvalid() from exc
        jti = payload.get("jti")
        if expected_type == REFRESH and (not isinstance(jti, str) or not jti):
            raise TokenInvalid()
        return TokenClaims(
            sub=sub,
            type=expected_type,
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            role=role,
            jti=jti,
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        return self._decode(token, self.access_keys, ACCESS)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        """Signature, expiry and class checks only; revocation is the caller's job."""
        return self._decode(token, self.refresh_keys, REFRESH)
