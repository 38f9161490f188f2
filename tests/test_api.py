"""End-to-end tests of the HTTP surface."""

from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from tachyon.auth import SESSION_COOKIE, Session
from tachyon.config import OIDCConfig, Settings
from tachyon.library import encode_id
from tachyon.main import create_app

from .conftest import NOW, SECRET, make_comic

ALPHA = encode_id("Alpha")
BETA = encode_id("Beta")


def _with_query(url: str, **changes) -> str:
    parts = urlsplit(url)
    query = {k: v[0] for k, v in parse_qs(parts.query).items()}
    query.update(changes)
    return parts.path + "?" + "&".join(f"{k}={v}" for k, v in query.items())


class TestPublicEndpoints:
    def test_health(self, client: TestClient):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["authEnabled"] is True
        assert data["comics"] == 2

    def test_config(self, client: TestClient):
        assert client.get("/api/config").json() == {"authEnabled": True}


class TestListing:
    def test_requires_session(self, client: TestClient):
        assert client.get("/api/comics").status_code == 401

    def test_capability_does_not_unlock_listing(self, client: TestClient, urls):
        cover = urls.cover_url(ALPHA)
        query = urlsplit(cover).query
        assert client.get(f"/api/comics?{query}").status_code == 401
        assert client.get(f"/api/comics/{ALPHA}/pages?{query}").status_code == 401
        assert client.get(f"/api/comics/{ALPHA}?{query}").status_code == 401

    def test_lists_comics(self, authed_client: TestClient):
        resp = authed_client.get("/api/comics")
        assert resp.status_code == 200
        data = resp.json()
        assert data["count"] == 2
        assert data["total"] == 2
        assert data["page"] == 1
        assert data["totalPages"] == 1
        assert [c["name"] for c in data["comics"]] == ["Alpha", "Beta"]
        assert data["comics"][0]["pageCount"] == 3
        assert data["comics"][0]["cover"].startswith(f"/api/comics/{ALPHA}/cover?")
        assert "no-store" in resp.headers["cache-control"]

    def test_pagination(self, tmp_path: Path, oidc_config: OIDCConfig, sessions, clock):
        root = tmp_path / "many"
        for i in range(25):
            make_comic(root, f"Comic {i + 1:02d}", ["1.png"])
        settings = Settings(comics_dir=root, secret_key=SECRET, watch_enabled=False, oidc=oidc_config)
        token = sessions.issue(Session(user_id="u", expires_at=NOW + 60))
        with TestClient(create_app(settings, clock=clock)) as client:
            client.cookies.set(SESSION_COOKIE, token)
            data = client.get("/api/comics", params={"page": 2, "limit": 10}).json()
        assert data["total"] == 25
        assert data["totalPages"] == 3
        assert [c["name"] for c in data["comics"]] == [f"Comic {i:02d}" for i in range(11, 21)]

    @pytest.mark.parametrize("params", [{"page": 0}, {"limit": 0}, {"limit": 501}, {"page": "x"}])
    def test_invalid_pagination(self, authed_client: TestClient, params):
        assert authed_client.get("/api/comics", params=params).status_code == 422


class TestComicMetadata:
    def test_get_comic(self, authed_client: TestClient):
        resp = authed_client.get(f"/api/comics/{ALPHA}")
        assert resp.json() == {"id": ALPHA, "name": "Alpha", "pageCount": 3}

    def test_unknown_comic(self, authed_client: TestClient):
        assert authed_client.get(f"/api/comics/{encode_id('Nope')}").status_code == 404

    def test_empty_folder_is_not_a_comic(self, authed_client: TestClient):
        assert authed_client.get(f"/api/comics/{encode_id('Empty')}").status_code == 404

    @pytest.mark.parametrize("name", ["..", "../Alpha", "Alpha/../../etc"])
    def test_traversal_ids_are_not_found(self, authed_client: TestClient, name):
        assert authed_client.get(f"/api/comics/{encode_id(name)}").status_code == 404
        assert authed_client.get(f"/api/comics/{encode_id(name)}/pages/0").status_code == 404

    def test_pages_listing_has_fresh_signed_urls(self, client: TestClient, session_token):
        client.cookies.set(SESSION_COOKIE, session_token)
        data = client.get(f"/api/comics/{ALPHA}/pages").json()
        assert data["pageCount"] == 3
        assert [p["filename"] for p in data["pages"]] == ["page1.jpg", "page2.jpg", "page10.jpg"]

        client.cookies.clear()
        for page in data["pages"]:
            resp = client.get(page["url"])
            assert resp.status_code == 200
            assert resp.content == f"image:Alpha/{page['filename']}".encode()

    def test_nested_pages(self, authed_client: TestClient):
        data = authed_client.get(f"/api/comics/{BETA}/pages").json()
        assert [p["index"] for p in data["pages"]] == [0, 1, 2]
        resp = authed_client.get(f"/api/comics/{BETA}/pages/2")
        assert resp.content == b"image:Beta/ch2/01.png"


class TestPageImages:
    def test_no_credentials(self, client: TestClient):
        assert client.get(f"/api/comics/{ALPHA}/pages/0").status_code == 401

    def test_session_streams_image(self, authed_client: TestClient):
        resp = authed_client.get(f"/api/comics/{ALPHA}/pages/1")
        assert resp.status_code == 200
        assert resp.content == b"image:Alpha/page2.jpg"
        assert resp.headers["content-type"] == "image/jpeg"
        assert resp.headers["cache-control"] == "public, max-age=31536000, immutable"
        assert resp.headers["etag"].startswith('"')

    def test_valid_capability_without_session(self, client: TestClient, urls):
        resp = client.get(urls.page_url(ALPHA, 0))
        assert resp.status_code == 200
        assert resp.content == b"image:Alpha/page1.jpg"

    def test_expired_capability(self, client: TestClient, urls, clock):
        url = urls.page_url(ALPHA, 0, ttl=30)
        clock.advance(31)
        assert client.get(url).status_code == 403

    def test_past_expiry_value(self, client: TestClient, urls):
        url = _with_query(urls.page_url(ALPHA, 0), expires=str(NOW - 100))
        assert client.get(url).status_code == 403

    def test_oversized_expiry(self, client: TestClient, urls):
        url = _with_query(urls.page_url(ALPHA, 0), expires="9" * 5000)
        assert client.get(url).status_code == 403

    def test_oversized_page_index(self, authed_client: TestClient):
        assert authed_client.get(f"/api/comics/{ALPHA}/pages/{'9' * 5000}").status_code == 400

    def test_tampered_signature(self, client: TestClient, urls):
        url = urls.page_url(ALPHA, 0)
        sig = parse_qs(urlsplit(url).query)["sig"][0]
        tampered = sig[:-2] + ("A" if sig[-2] != "A" else "B") + sig[-1:]
        assert client.get(_with_query(url, sig=tampered)).status_code == 403

    def test_capability_for_other_page(self, client: TestClient, urls):
        url = urls.page_url(ALPHA, 0)
        query = urlsplit(url).query
        assert client.get(f"/api/comics/{ALPHA}/pages/1?{query}").status_code == 403
        assert client.get(f"/api/comics/{BETA}/pages/0?{query}").status_code == 403

    def test_unauthorized_does_not_leak_existence(self, client: TestClient):
        missing = encode_id("Nope")
        assert client.get(f"/api/comics/{missing}/pages/0").status_code == 401
        assert client.get(f"/api/comics/{missing}/cover").status_code == 401

    @pytest.mark.parametrize("page", ["-1", "abc", "1.5"])
    def test_invalid_page_index(self, authed_client: TestClient, page):
        assert authed_client.get(f"/api/comics/{ALPHA}/pages/{page}").status_code == 400

    def test_page_out_of_range(self, authed_client: TestClient):
        assert authed_client.get(f"/api/comics/{ALPHA}/pages/3").status_code == 404

    def test_if_none_match(self, authed_client: TestClient):
        first = authed_client.get(f"/api/comics/{ALPHA}/pages/0")
        etag = first.headers["etag"]
        resp = authed_client.get(f"/api/comics/{ALPHA}/pages/0", headers={"If-None-Match": etag})
        assert resp.status_code == 304
        assert resp.content == b""
        assert resp.headers["etag"] == etag

    def test_etag_changes_with_content(self, authed_client: TestClient, comics_root: Path):
        etag = authed_client.get(f"/api/comics/{ALPHA}/pages/0").headers["etag"]
        (comics_root / "Alpha" / "page1.jpg").write_bytes(b"a much longer replacement image")
        resp = authed_client.get(f"/api/comics/{ALPHA}/pages/0", headers={"If-None-Match": etag})
        assert resp.status_code == 200
        assert resp.headers["etag"] != etag


class TestCover:
    def test_cover_with_session(self, authed_client: TestClient):
        resp = authed_client.get(f"/api/comics/{ALPHA}/cover")
        assert resp.status_code == 200
        assert resp.content == b"image:Alpha/page1.jpg"

    def test_cover_with_indexed_signed_url(self, client: TestClient, session_token):
        client.cookies.set(SESSION_COOKIE, session_token)
        cover = client.get("/api/comics").json()["comics"][1]["cover"]
        client.cookies.clear()
        resp = client.get(cover)
        assert resp.status_code == 200
        assert resp.content == b"image:Beta/ch1/01.png"

    def test_page_capability_does_not_open_cover(self, client: TestClient, urls):
        query = urlsplit(urls.page_url(ALPHA, 0)).query
        assert client.get(f"/api/comics/{ALPHA}/cover?{query}").status_code == 403

    def test_cover_missing(self, authed_client: TestClient):
        assert authed_client.get(f"/api/comics/{encode_id('Empty')}/cover").status_code == 404


class TestAuthModes:
    def test_unconfigured_fails_closed(self, comics_root: Path, clock, session_token):
        settings = Settings(comics_dir=comics_root, secret_key=SECRET, watch_enabled=False)
        with TestClient(create_app(settings, clock=clock)) as client:
            client.cookies.set(SESSION_COOKIE, session_token)
            assert client.get("/api/comics").status_code == 503
            assert client.get(f"/api/comics/{ALPHA}/pages/0").status_code == 503
            assert client.get("/").status_code == 503
            assert client.get("/health").status_code == 200

    def test_explicitly_disabled_auth(self, comics_root: Path, clock):
        settings = Settings(
            comics_dir=comics_root, secret_key=SECRET, watch_enabled=False, auth_disabled=True
        )
        with TestClient(create_app(settings, clock=clock)) as client:
            assert client.get("/api/config").json() == {"authEnabled": False}
            assert client.get("/api/comics").status_code == 200
            assert client.get(f"/api/comics/{ALPHA}/pages/0").status_code == 200


class TestReaderPages:
    def test_library_requires_login(self, client: TestClient):
        resp = client.get("/")
        assert resp.status_code == 401
        assert "/api/auth/login" in resp.text

    def test_library_lists_comics(self, authed_client: TestClient):
        resp = authed_client.get("/")
        assert resp.status_code == 200
        assert "Alpha" in resp.text
        assert f"/read/{ALPHA}" in resp.text

    def test_reader_embeds_signed_urls(self, authed_client: TestClient):
        resp = authed_client.get(f"/read/{ALPHA}")
        assert resp.status_code == 200
        assert f"/api/comics/{ALPHA}/pages/0?expires=" in resp.text

    def test_reader_unknown_comic(self, authed_client: TestClient):
        assert authed_client.get(f"/read/{encode_id('Nope')}").status_code == 404

    def test_static_assets(self, client: TestClient):
        assert client.get("/static/reader.js").status_code == 200
