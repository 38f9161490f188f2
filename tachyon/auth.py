import json
import re
import time
from dataclasses import dataclass
from typing import Callable

from .config import SESSION_TTL, SIGNED_URL_TTL
from .signing import Signer, b64url_decode, b64url_encode

SESSION_COOKIE = "tachyon_session"
STATE_COOKIE = "tachyon_state"
PKCE_COOKIE = "tachyon_pkce"

COVER = "cover"

# Long enough for any real epoch second, short enough for int().
_EXPIRES_RE = re.compile(r"[0-9]{1,20}")

Clock = Callable[[], float]


def _now(clock: Clock) -> int:
    return int(clock())


@dataclass(frozen=True)
class Session:
    user_id: str
    expires_at: int
    email: str | None = None
    name: str | None = None
    avatar: str | None = None

    def to_payload(self) -> dict:
        data = {"userId": self.user_id}
        for key, value in (("email", self.email), ("name", self.name), ("avatar", self.avatar)):
            if value is not None:
                data[key] = value
        data["expiresAt"] = self.expires_at
        return data

    def public(self) -> dict:
        return {"id": self.user_id, "email": self.email, "name": self.name, "avatar": self.avatar}


def _session_from_payload(data) -> Session | None:
    if not isinstance(data, dict):
        return None
    user_id = data.get("userId")
    expires_at = data.get("expiresAt")
    if not isinstance(user_id, str) or not user_id:
        return None
    # bool is an int subclass; reject it explicitly.
    if not isinstance(expires_at, int) or isinstance(expires_at, bool):
        return None
    optional = {}
    for key in ("email", "name", "avatar"):
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            return None
        optional[key] = value
    return Session(user_id=user_id, expires_at=expires_at, **optional)


class SessionCodec:
    """Stateless signed session tokens: base64url(json) "." signature."""

    def __init__(self, signer: Signer, ttl: int = SESSION_TTL, clock: Clock = time.time):
        self.signer = signer
        self.ttl = ttl
        self.clock = clock

    def new_session(self, userinfo: dict, ttl: int | None = None) -> Session:
        def _str(key: str) -> str | None:
            value = userinfo.get(key)
            return value if isinstance(value, str) else None

        return Session(
            user_id=str(userinfo["sub"]),
            expires_at=_now(self.clock) + (self.ttl if ttl is None else ttl),
            email=_str("email"),
            name=_str("name"),
            avatar=_str("picture"),
        )

    def issue(self, session: Session) -> str:
        payload = json.dumps(session.to_payload(), separators=(",", ":"))
        return f"{b64url_encode(payload.encode('utf-8'))}.{self.signer.sign(payload)}"

    def redeem(self, token: str | None) -> Session | None:
        if not token or not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None
        payload_b64, sig = parts
        try:
            payload = b64url_decode(payload_b64).decode("utf-8")
        except ValueError:
            return None
        if not self.signer.verify(payload, sig):
            return None
        try:
            data = json.loads(payload)
        except ValueError:
            return None
        session = _session_from_payload(data)
        if session is None or session.expires_at < _now(self.clock):
            return None
        return session


def page_key(comic_id: str, page: int) -> str:
    return f"{comic_id}:{page}"


def cover_key(comic_id: str) -> str:
    return f"{comic_id}:{COVER}"


class UrlSigner:
    """Issues and verifies capability URLs for covers and pages."""

    def __init__(self, signer: Signer, ttl: int = SIGNED_URL_TTL, clock: Clock = time.time):
        self.signer = signer
        self.ttl = ttl
        self.clock = clock

    def _sign(self, resource_key: str, ttl: int | None) -> tuple[int, str]:
        expires = _now(self.clock) + (self.ttl if ttl is None else ttl)
        return expires, self.signer.sign(f"{resource_key}:{expires}")

    def page_url(self, comic_id: str, page: int, ttl: int | None = None) -> str:
        expires, sig = self._sign(page_key(comic_id, page), ttl)
        return f"/api/comics/{comic_id}/pages/{page}?expires={expires}&sig={sig}"

    def cover_url(self, comic_id: str, ttl: int | None = None) -> str:
        expires, sig = self._sign(cover_key(comic_id), ttl)
        return f"/api/comics/{comic_id}/cover?expires={expires}&sig={sig}"

    def verify(self, resource_key: str, expires: str | None, signature: str | None) -> bool:
        if not expires or not signature:
            return False
        if not _EXPIRES_RE.fullmatch(expires):
            return False
        expires_at = int(expires)
        if expires_at < _now(self.clock):
            return False
        return self.signer.verify(f"{resource_key}:{expires_at}", signature)
