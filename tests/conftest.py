from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from tachyon.auth import SESSION_COOKIE, Session, SessionCodec, UrlSigner
from tachyon.config import OIDCConfig, Settings
from tachyon.main import create_app
from tachyon.signing import Signer

SECRET = "test-secret"
NOW = 1_700_000_000


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_comic(root: Path, name: str, pages: list[str]) -> Path:
    folder = root / name
    folder.mkdir(parents=True, exist_ok=True)
    for page in pages:
        target = folder / page
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(f"image:{name}/{page}".encode("utf-8"))
    return folder


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def signer() -> Signer:
    return Signer(SECRET)


@pytest.fixture
def urls(signer: Signer, clock: FakeClock) -> UrlSigner:
    return UrlSigner(signer, clock=clock)


@pytest.fixture
def sessions(signer: Signer, clock: FakeClock) -> SessionCodec:
    return SessionCodec(signer, clock=clock)


@pytest.fixture
def comics_root(tmp_path: Path) -> Path:
    root = tmp_path / "comics"
    root.mkdir()
    make_comic(root, "Alpha", ["page1.jpg", "page10.jpg", "page2.jpg"])
    make_comic(root, "Beta", ["ch2/01.png", "ch1/01.png", "ch1/02.png"])
    (root / "Empty").mkdir()
    (root / "Notes").mkdir()
    (root / "Notes" / "readme.txt").write_text("not a comic")
    return root


@pytest.fixture
def oidc_config() -> OIDCConfig:
    return OIDCConfig(
        issuer="https://idp.test",
        client_id="tachyon",
        client_secret="client-secret",
        redirect_uri="http://testserver/api/auth/callback",
    )


@pytest.fixture
def settings(comics_root: Path, oidc_config: OIDCConfig) -> Settings:
    return Settings(
        comics_dir=comics_root,
        secret_key=SECRET,
        watch_enabled=False,
        oidc=oidc_config,
    )


@pytest.fixture
def client(settings: Settings, clock: FakeClock):
    app = create_app(settings, clock=clock)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def session_token(sessions: SessionCodec, clock: FakeClock) -> str:
    return sessions.issue(
        Session(user_id="user-1", expires_at=int(clock()) + 3600, email="ann@example.com", name="Ann")
    )


@pytest.fixture
def authed_client(client: TestClient, session_token: str) -> TestClient:
    client.cookies.set(SESSION_COOKIE, session_token)
    return client
