from dataclasses import dataclass

from .auth import Session, SessionCodec, UrlSigner

OPEN = "open"
VIA_SESSION = "session"
VIA_CAPABILITY = "capability"

UNCONFIGURED = "unconfigured"
UNAUTHENTICATED = "unauthenticated"
INVALID_CAPABILITY = "invalid_capability"


@dataclass(frozen=True)
class Access:
    granted: bool
    via: str | None = None
    session: Session | None = None
    reason: str | None = None


class AccessGate:
    """
    The one authorization decision shared by every comic route.

    Capabilities are only considered when the caller passes a resource_key,
    which image routes do and listing/metadata routes never do.
    """

    def __init__(self, sessions: SessionCodec, urls: UrlSigner, mode: str = "oidc"):
        if mode not in {"oidc", "disabled", UNCONFIGURED}:
            raise ValueError(f"unknown auth mode {mode!r}")
        self.sessions = sessions
        self.urls = urls
        self.mode = mode

    @property
    def auth_enabled(self) -> bool:
        return self.mode != "disabled"

    def decide(
        self,
        session_token: str | None,
        resource_key: str | None = None,
        expires: str | None = None,
        signature: str | None = None,
    ) -> Access:
        if self.mode == UNCONFIGURED:
            return Access(False, reason=UNCONFIGURED)
        if self.mode == "disabled":
            return Access(True, via=OPEN)

        session = self.sessions.redeem(session_token)
        if session is not None:
            return Access(True, via=VIA_SESSION, session=session)

        if resource_key is not None and (expires is not None or signature is not None):
            if self.urls.verify(resource_key, expires, signature):
                return Access(True, via=VIA_CAPABILITY)
            return Access(False, reason=INVALID_CAPABILITY)

        return Access(False, reason=UNAUTHENTICATED)
