"""Tests for download_assets module."""

import json
from unittest.mock import Mock

import pytest
import requests

from download_assets import (
    AssetFetchError,
    assign_names,
    disambiguate,
    fetch_asset,
    load_manifest,
    local_name,
    localize,
    resolve_one,
    run_loop,
)
from html_to_md import convert_body
from models import ConvertedDocument, ReferenceTable, Status


def response(status=200, body=b"\x89PNG-bytes", location=None) -> Mock:
    r = Mock()
    r.status_code = status
    r.headers = {"Location": location} if location else {}
    r.iter_content.return_value = [body]
    return r


def routed_session(routes: dict) -> Mock:
    """Session whose get() answers by URL; unknown URLs are 404s."""
    session = Mock()
    session.get.side_effect = lambda url, **kwargs: routes.get(url) or response(404)
    return session


def redirect_chain(hops: int) -> dict:
    routes = {f"https://x.example/r{i}": response(302, location=f"https://x.example/r{i + 1}")
              for i in range(hops)}
    routes[f"https://x.example/r{hops}"] = response(200, b"final")
    return routes


class TestFetchAsset:
    def test_five_redirects_succeed(self, tmp_path) -> None:
        dest = tmp_path / "a.png"
        final = fetch_asset(routed_session(redirect_chain(5)), "https://x.example/r0", dest)
        assert final == "https://x.example/r5"
        assert dest.read_bytes() == b"final"

    def test_six_redirects_fail(self, tmp_path) -> None:
        dest = tmp_path / "a.png"
        with pytest.raises(AssetFetchError, match="too many redirects"):
            fetch_asset(routed_session(redirect_chain(6)), "https://x.example/r0", dest)
        assert not dest.exists()

    def test_relative_location(self, tmp_path) -> None:
        routes = {
            "https://x.example/img/a.png": response(301, location="/cdn/a.png"),
            "https://x.example/cdn/a.png": response(200, b"ok"),
        }
        final = fetch_asset(routed_session(routes), "https://x.example/img/a.png", tmp_path / "a.png")
        assert final == "https://x.example/cdn/a.png"

    def test_http_error_status(self, tmp_path) -> None:
        with pytest.raises(AssetFetchError, match="HTTP 404"):
            fetch_asset(routed_session({}), "https://x.example/missing.png", tmp_path / "m.png")

    def test_timeout(self, tmp_path) -> None:
        session = Mock()
        session.get.side_effect = requests.Timeout("read timed out")
        with pytest.raises(AssetFetchError, match="read timed out"):
            fetch_asset(session, "https://x.example/slow.png", tmp_path / "s.png")

    def test_interrupted_body_leaves_no_partial_file(self, tmp_path) -> None:
        r = response()
        r.iter_content.side_effect = requests.ConnectionError("connection reset")
        dest = tmp_path / "a.png"
        with pytest.raises(AssetFetchError, match="download interrupted"):
            fetch_asset(routed_session({"https://x.example/a.png": r}), "https://x.example/a.png", dest)
        assert list(tmp_path.iterdir()) == []

    def test_no_automatic_redirect_following(self, tmp_path) -> None:
        session = routed_session({"https://x.example/a.png": response()})
        fetch_asset(session, "https://x.example/a.png", tmp_path / "a.png", timeout=7)
        session.get.assert_called_once_with("https://x.example/a.png", allow_redirects=False,
                                            timeout=7, stream=True)


class TestNaming:
    def test_local_name_drops_query(self) -> None:
        assert local_name("https://x.example/wp-content/uploads/a.png?w=300&h=2") == "a.png"

    def test_local_name_fallback_and_unsafe_chars(self) -> None:
        assert local_name("https://x.example/") == "asset"
        assert local_name("https://x.example/my%20pic(1).jpg") == "my_pic_1_.jpg"

    def test_long_name_is_capped_and_unique(self) -> None:
        uri = "https://x.example/" + "a" * 300 + ".png"
        name = local_name(uri)
        assert len(name) <= 120
        assert name.startswith("aaa") and name.endswith(".png")
        assert name != local_name("https://x.example/" + "a" * 301 + ".png")

    def test_collision_gets_hashed_name(self) -> None:
        a = "https://a.example/x/photo.jpg"
        b = "https://b.example/y/photo.jpg"
        names = assign_names([b, a], {})
        assert names[a] == "photo.jpg"
        assert names[b] == disambiguate("photo.jpg", b)
        assert names[b].startswith("photo-") and names[b].endswith(".jpg")

    def test_manifest_pins_existing_names(self) -> None:
        a = "https://a.example/x/photo.jpg"
        b = "https://b.example/y/photo.jpg"
        names = assign_names([a, b], {"photo.jpg": b})
        assert names[b] == "photo.jpg"
        assert names[a] == disambiguate("photo.jpg", a)

    def test_disambiguate_without_extension(self) -> None:
        assert disambiguate("asset", "https://x.example/").startswith("asset-")


class TestLocalize:
    def test_shared_uri_fetched_once(self, tmp_path) -> None:
        table = ReferenceTable()
        for slug in ("one", "two", "three"):
            table.observe("https://x.example/a.png", slug)
        session = routed_session({"https://x.example/a.png": response()})

        localize(table, tmp_path, session=session)

        assert session.get.call_count == 1
        ref = table.get("https://x.example/a.png")
        assert ref.status is Status.RESOLVED
        assert ref.local_address == "/images/a.png"
        assert load_manifest(tmp_path) == {"a.png": "https://x.example/a.png"}

    def test_file_on_disk_short_circuits_network(self, tmp_path) -> None:
        (tmp_path / "a.png").write_bytes(b"cached")
        ref = ReferenceTable().observe("https://x.example/a.png", "p")
        session = Mock()

        resolve_one(ref, "a.png", tmp_path, session, "/images/", 5, 5)

        session.get.assert_not_called()
        assert ref.status is Status.RESOLVED
        assert (tmp_path / "a.png").read_bytes() == b"cached"

    def test_one_failure_does_not_stop_the_rest(self, tmp_path) -> None:
        table = ReferenceTable()
        table.observe("https://x.example/good.png", "p")
        table.observe("https://x.example/bad.png", "p")
        session = routed_session({"https://x.example/good.png": response()})

        localize(table, tmp_path, session=session, max_workers=2)

        assert table.get("https://x.example/good.png").status is Status.RESOLVED
        bad = table.get("https://x.example/bad.png")
        assert bad.status is Status.FAILED
        assert bad.reason == "HTTP 404"
        assert load_manifest(tmp_path) == {"good.png": "https://x.example/good.png"}

    def test_filesystem_error_fails_only_that_reference(self, tmp_path) -> None:
        table = ReferenceTable()
        table.observe("https://x.example/good.png", "p")
        table.observe("https://x.example/huge.png", "p")
        good = response()
        session = Mock()

        def get(url, **kwargs):
            if url.endswith("huge.png"):
                raise OSError(36, "File name too long")
            return good
        session.get.side_effect = get

        localize(table, tmp_path, session=session, max_workers=2)

        huge = table.get("https://x.example/huge.png")
        assert huge.status is Status.FAILED
        assert "File name too long" in huge.reason
        assert table.get("https://x.example/good.png").status is Status.RESOLVED
        assert load_manifest(tmp_path) == {"good.png": "https://x.example/good.png"}


def _write_corpus(out_dir) -> None:
    ConvertedDocument(
        slug="first",
        header={"title": "First", "slug": "first", "heroImage": "https://cdn.example/cover.jpg"},
        body="![a](https://cdn.example/pic.png)\n\n![gone](https://cdn.example/gone.png)\n",
    ).save(out_dir)
    ConvertedDocument(
        slug="second",
        header={"title": "Second", "slug": "second"},
        body="Same picture: ![b](https://cdn.example/pic.png)\n",
    ).save(out_dir)


class TestRunLoop:
    def routes(self) -> dict:
        return {
            "https://cdn.example/cover.jpg": response(200, b"cover"),
            "https://cdn.example/pic.png": response(200, b"pic"),
        }

    def test_rewrites_resolved_and_reports_failures(self, tmp_path) -> None:
        out, assets = tmp_path / "posts", tmp_path / "images"
        _write_corpus(out)

        report = run_loop(out, assets, session=routed_session(self.routes()))

        assert report.resolved == 2
        assert report.failed == 1
        assert report.rewritten == 2
        first = ConvertedDocument.load(out / "first.md")
        assert first.header["heroImage"] == "/images/cover.jpg"
        assert "![a](/images/pic.png)" in first.body
        assert "![gone](https://cdn.example/gone.png)" in first.body
        assert ("first", "https://cdn.example/gone.png") in report.skipped

        failures = json.loads((out / "failures.json").read_text(encoding="utf-8"))
        assert failures == [{
            "uri": "https://cdn.example/gone.png",
            "status": "failed",
            "reason": "HTTP 404",
            "documents": ["first"],
        }]

    def test_second_run_is_a_no_op(self, tmp_path) -> None:
        out, assets = tmp_path / "posts", tmp_path / "images"
        _write_corpus(out)
        run_loop(out, assets, session=routed_session(self.routes()))
        snapshot = {p: p.read_bytes() for p in tmp_path.rglob("*") if p.is_file()}

        session = routed_session(self.routes())
        report = run_loop(out, assets, session=session)

        assert report.rewritten == 0
        assert report.resolved == 0
        fetched = [c.args[0] for c in session.get.call_args_list]
        assert fetched == ["https://cdn.example/gone.png"]
        assert {p: p.read_bytes() for p in tmp_path.rglob("*") if p.is_file()} == snapshot

    def test_clean_run_removes_stale_failure_list(self, tmp_path) -> None:
        out, assets = tmp_path / "posts", tmp_path / "images"
        _write_corpus(out)
        run_loop(out, assets, session=routed_session(self.routes()))
        assert (out / "failures.json").exists()

        routes = self.routes()
        routes["https://cdn.example/gone.png"] = response(200, b"back")
        run_loop(out, assets, session=routed_session(routes))

        assert not (out / "failures.json").exists()
        assert "![gone](/images/gone.png)" in (out / "first.md").read_text(encoding="utf-8")

    def test_query_parameters_reach_the_server_unchanged(self, tmp_path) -> None:
        out, assets = tmp_path / "posts", tmp_path / "images"
        uri = "https://cdn.example/a.png?w=1&param=2&region=eu"
        ConvertedDocument(
            slug="q",
            header={"title": "Q", "slug": "q"},
            body=convert_body('<p><img src="https://cdn.example/a.png?w=1&amp;param=2&amp;region=eu"></p>'),
        ).save(out)
        session = routed_session({uri: response(200, b"q")})

        report = run_loop(out, assets, session=session)

        assert [c.args[0] for c in session.get.call_args_list] == [uri]
        assert report.rewritten == 1
        assert report.failures == []
        assert ConvertedDocument.load(out / "q.md").body == "![](/images/a.png)\n"
