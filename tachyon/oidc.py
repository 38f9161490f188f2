"""Authorization code + PKCE exchange against an external OIDC provider."""

import hashlib
import logging
import secrets
from urllib.parse import urlencode

import requests

from .config import OIDCConfig
from .errors import UpstreamError
from .signing import b64url_encode

logger = logging.getLogger(__name__)

TIMEOUT = 10


def new_state() -> str:
    return secrets.token_hex(16)


def new_code_verifier() -> str:
    return b64url_encode(secrets.token_bytes(32))


def code_challenge(verifier: str) -> str:
    return b64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())


def authorization_url(config: OIDCConfig, state: str, challenge: str) -> str:
    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": "code",
        "scope": config.scope,
        "state": state,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    endpoint = config.authorization_endpoint
    sep = "&" if "?" in endpoint else "?"
    return f"{endpoint}{sep}{urlencode(params)}"


def _json(resp: requests.Response, what: str) -> dict:
    if not resp.ok:
        logger.warning("%s failed with HTTP %s: %s", what, resp.status_code, resp.text[:500])
        raise UpstreamError(f"{what} failed with HTTP {resp.status_code}")
    try:
        data = resp.json()
    except ValueError as exc:
        raise UpstreamError(f"{what} returned invalid JSON") from exc
    if not isinstance(data, dict):
        raise UpstreamError(f"{what} returned a non-object response")
    return data


def exchange_code(config: OIDCConfig, code: str, verifier: str) -> dict:
    try:
        resp = requests.post(
            config.token_endpoint,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": config.redirect_uri,
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "code_verifier": verifier,
            },
            headers={"Accept": "application/json"},
            timeout=TIMEOUT,
        )
    except requests.RequestException as exc:
        raise UpstreamError(f"Token request failed: {exc}") from exc
    tokens = _json(resp, "Token exchange")
    if not isinstance(tokens.get("access_token"), str):
        raise UpstreamError("Token response has no access_token")
    return tokens


def fetch_userinfo(config: OIDCConfig, access_token: str) -> dict:
    try:
        resp = requests.get(
            config.userinfo_endpoint,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout=TIMEOUT,
        )
    except requests.RequestException as exc:
        raise UpstreamError(f"Userinfo request failed: {exc}") from exc
    info = _json(resp, "Userinfo fetch")
    if not info.get("sub"):
        raise UpstreamError("Userinfo response has no subject")
    return info
