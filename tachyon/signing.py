"""HMAC-SHA256 proofs for session tokens and signed image URLs."""

import base64
import hashlib
import hmac


def _as_bytes(value: bytes | str) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Strict inverse of b64url_encode; raises ValueError on bad input."""
    padded = data + "=" * (-len(data) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


def sign(message: bytes | str, secret: bytes | str) -> str:
    digest = hmac.new(_as_bytes(secret), _as_bytes(message), hashlib.sha256).digest()
    return b64url_encode(digest)


def verify(message: bytes | str, signature: str, secret: bytes | str) -> bool:
    if not isinstance(signature, str) or not signature:
        return False
    expected = sign(message, secret)
    return hmac.compare_digest(
        expected.encode("ascii"), signature.encode("utf-8", "surrogatepass")
    )


class Signer:
    """Binds the process-wide secret; immutable once constructed."""

    def __init__(self, secret: bytes | str):
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._secret = _as_bytes(secret)

    def sign(self, message: bytes | str) -> str:
        return sign(message, self._secret)

    def verify(self, message: bytes | str, signature: str) -> bool:
        return verify(message, signature, self._secret)
