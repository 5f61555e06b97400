#!/usr/bin/env python3
"""
strip_boilerplate.py – drop the operator's own promo lines from converted
posts ("follow me on…", "subscribe at…") without touching guest content.

Usage:
    python strip_boilerplate.py --pattern myblog.example --pattern twitter.com/me

A line goes only if it links somewhere and *every* link on it matches a
pattern. One link to anyone else keeps the whole line.

After filtering, bare URLs become <autolinks> and, with --handle-base,
@handles become profile links. Those conversions can expose new
boilerplate, so filter + convert repeats until nothing changes.
"""
import argparse
import logging
import pathlib
import re
import sys
from typing import Callable, Iterable, Optional

import settings
from models import ConvertedDocument, load_corpus

logger = logging.getLogger(__name__)

re_md_link   = re.compile(r"\[(?:\\.|[^\]\\])*\]\(\s*<?([^)\s>]+)>?[^)]*\)")
re_bare_url  = re.compile(r"https?://[^\s<>()\[\]\"']+")
re_autolink_candidate = re.compile(r"(?<![(<\[\"'=\w/])https?://[^\s<>()\[\]\"']+")
re_handle    = re.compile(r"(?<![\w@/\[\\])@((?:[A-Za-z0-9]|\\?_){1,30})(?![\w@])")
re_code_span = re.compile(r"(`+)(?!`).*?(?<!`)\1(?!`)")
URL_TAIL     = ".,;:!?"
MAX_ROUNDS   = 50


# ── 1.  Classification ----------------------------------------------------
def line_uris(line: str) -> set[str]:
    uris = set(re_md_link.findall(line))
    uris.update(m.rstrip(URL_TAIL) for m in re_bare_url.findall(line))
    return uris


def matches_owner(uri: str, patterns: Iterable[str]) -> bool:
    low = uri.lower()
    return any(p.lower() in low for p in patterns if p)


def is_boilerplate(line: str, patterns: Iterable[str]) -> bool:
    patterns = list(patterns)
    uris = line_uris(line)
    return bool(uris) and all(matches_owner(uri, patterns) for uri in uris)


# ── 2.  Post-filter line conversions ---------------------------------------
def outside_code(convert: Callable[[str], str]) -> Callable[[str], str]:
    """Apply a line conversion only to the text between `code spans`."""
    def wrapped(line: str) -> str:
        out, pos = [], 0
        for m in re_code_span.finditer(line):
            out.append(convert(line[pos:m.start()]))
            out.append(m.group(0))
            pos = m.end()
        out.append(convert(line[pos:]))
        return "".join(out)
    return wrapped


@outside_code
def autolink_bare_urls(line: str) -> str:
    def repl(m: re.Match) -> str:
        url = m.group(0)
        core = url.rstrip(URL_TAIL)
        return f"<{core}>{url[len(core):]}"
    return re_autolink_candidate.sub(repl, line)


def handle_linker(base_url: str) -> Callable[[str], str]:
    @outside_code
    def link_handles(line: str) -> str:
        def repl(m: re.Match) -> str:
            handle = m.group(1).replace("\\_", "_")
            return f"[@{m.group(1)}]({base_url}{handle})"
        return re_handle.sub(repl, line)
    return link_handles


def default_conversions(handle_base: Optional[str] = None) -> list[Callable[[str], str]]:
    handle_base = settings.HANDLE_BASE_URL if handle_base is None else handle_base
    steps = [autolink_bare_urls]
    if handle_base:
        steps.append(handle_linker(handle_base))
    return steps


def convert_lines(lines: list[str], conversions) -> list[str]:
    out, in_fence = [], False
    for line in lines:
        stripped = line.lstrip()
        if stripped.startswith("```"):
            in_fence = not in_fence
        if in_fence or stripped.startswith(("```", "<")):
            out.append(line)
            continue
        for step in conversions:
            line = step(line)
        out.append(line)
    return out


# ── 3.  Fixed point ------------------------------------------------------------
def strip_boilerplate(body: str, patterns, conversions=None) -> tuple[str, int]:
    """Returns (new body, number of lines removed)."""
    patterns = [p for p in patterns if p]
    conversions = default_conversions() if conversions is None else conversions
    lines = body.split("\n")
    removed = 0
    for _ in range(MAX_ROUNDS):
        kept = [line for line in lines if not is_boilerplate(line, patterns)] if patterns else lines
        removed += len(lines) - len(kept)
        converted = convert_lines(kept, conversions)
        if converted == lines:
            break
        lines = converted
    else:
        logger.warning("boilerplate filter still changing after %d rounds; stopping", MAX_ROUNDS)

    text = "\n".join(lines)
    if removed:
        text = re.sub(r"\n{3,}", "\n\n", text).strip("\n")
        text = text + "\n" if text else ""
    return text, removed


def strip_document(doc: ConvertedDocument, patterns, conversions=None) -> int:
    body, removed = strip_boilerplate(doc.body, patterns, conversions)
    doc.body = body
    return removed


def strip_corpus(docs, patterns, out_dir: pathlib.Path, conversions=None) -> int:
    total = 0
    for doc in docs:
        before = doc.body
        removed = strip_document(doc, patterns, conversions)
        if doc.body != before:
            doc.save(out_dir)
        if removed:
            logger.info("✓ %s.md – %d boilerplate line(s) removed", doc.slug, removed)
        total += removed
    return total


def main():
    parser = argparse.ArgumentParser(description="Remove self-promotional lines from converted posts")
    parser.add_argument("--out", type=pathlib.Path, default=settings.OUTPUT_DIR)
    parser.add_argument("--pattern", action="append", default=None,
                        help="URI/handle fragment identifying your own content (repeatable)")
    parser.add_argument("--handle-base", default=None,
                        help="Turn @handles into links under this URL, e.g. https://twitter.com/")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    patterns = args.pattern or settings.OWNER_PATTERNS
    if not patterns:
        sys.exit("No --pattern given and WP2MD_OWNER_PATTERNS is empty.")
    if not args.out.is_dir():
        sys.exit(f"✗ {args.out} missing – run html_to_md.py first.")

    removed = strip_corpus(load_corpus(args.out), patterns, args.out,
                           default_conversions(args.handle_base))
    print(f"\nFinished: {removed} boilerplate line(s) removed")


if __name__ == "__main__":
    main()
