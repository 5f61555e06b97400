"""Tests for strip_boilerplate module."""

import pytest

from models import ConvertedDocument
from strip_boilerplate import (
    autolink_bare_urls,
    handle_linker,
    is_boilerplate,
    strip_boilerplate,
    strip_corpus,
)

PATTERNS = ["host.example"]


class TestIsBoilerplate:
    def test_mixed_line_kept(self) -> None:
        assert not is_boilerplate("[Guest](https://guest.example) [Host](https://host.example)", PATTERNS)

    def test_all_owner_links_removed(self) -> None:
        assert is_boilerplate("[Host1](https://host.example/a) [Host2](https://host.example/b)", PATTERNS)

    @pytest.mark.parametrize("line", [
        "",
        "Plain prose mentioning host.example without a link",
        "Follow me on the fediverse",
    ])
    def test_lines_without_links_kept(self, line) -> None:
        assert not is_boilerplate(line, PATTERNS)

    def test_matching_is_case_insensitive(self) -> None:
        assert is_boilerplate("Subscribe: https://HOST.example/newsletter.", PATTERNS)


class TestConversions:
    def test_bare_url_autolinked(self) -> None:
        assert autolink_bare_urls("see https://x.example/a, then") == "see <https://x.example/a>, then"

    def test_existing_links_untouched(self) -> None:
        line = "[https://x.example](https://x.example) and <https://y.example>"
        assert autolink_bare_urls(line) == line

    def test_code_spans_left_alone(self) -> None:
        line = "run `curl https://x.example/api` or see https://x.example/docs"
        assert autolink_bare_urls(line) == "run `curl https://x.example/api` or see <https://x.example/docs>"
        link = handle_linker("https://social.example/")
        assert link("type `@here` to ping @ops") == "type `@here` to ping [@ops](https://social.example/ops)"

    def test_handles_linked_once(self) -> None:
        link = handle_linker("https://social.example/")
        once = link("thanks @some\\_one and mail me@mail.example")
        assert once == "thanks [@some\\_one](https://social.example/some_one) and mail me@mail.example"
        assert link(once) == once


class TestStripBoilerplate:
    def test_scenario_lines(self) -> None:
        body = ("Intro\n"
                "[Guest](https://guest.example) [Host](https://host.example)\n"
                "[Host1](https://host.example/a) [Host2](https://host.example/b)\n")
        text, removed = strip_boilerplate(body, PATTERNS, conversions=[])
        assert removed == 1
        assert text == "Intro\n[Guest](https://guest.example) [Host](https://host.example)\n"

    def test_conversion_exposes_more_boilerplate(self) -> None:
        body = "Great post.\n\nFollow @hostdotexample for more\n\nBye\n"
        conversions = [handle_linker("https://host.example/")]
        text, removed = strip_boilerplate(body, PATTERNS, conversions)
        assert removed == 1
        assert text == "Great post.\n\nBye\n"

    def test_result_is_a_fixed_point(self) -> None:
        body = "Read https://host.example/join\n\nkeep https://guest.example/x\n"
        once, _ = strip_boilerplate(body, PATTERNS)
        twice, removed = strip_boilerplate(once, PATTERNS)
        assert twice == once
        assert removed == 0
        assert once == "keep <https://guest.example/x>\n"

    def test_no_patterns_removes_nothing(self) -> None:
        body = "[Host](https://host.example)\n"
        assert strip_boilerplate(body, [], conversions=[]) == (body, 0)

    def test_code_fences_left_alone(self) -> None:
        body = "```\ncurl https://guest.example/api\n```\n"
        assert strip_boilerplate(body, PATTERNS)[0] == body


class TestStripCorpus:
    def test_saves_only_changed_documents(self, tmp_path) -> None:
        promo = ConvertedDocument("promo", {"title": "Promo", "slug": "promo"},
                                  "Text\n\n[Me](https://host.example/me)\n")
        clean = ConvertedDocument("clean", {"title": "Clean", "slug": "clean"}, "Text\n")

        removed = strip_corpus([promo, clean], PATTERNS, tmp_path, conversions=[])

        assert removed == 1
        assert (tmp_path / "promo.md").read_text(encoding="utf-8").endswith("---\n\nText\n")
        assert not (tmp_path / "clean.md").exists()
