#!/usr/bin/env python3
"""
Convert every published post of a WordPress export to clean Markdown
(<slug>.md with a front-matter header).

Usage:
    python html_to_md.py export.xml [--out content/posts]

Dependencies:
    pip install beautifulsoup4 lxml markdownify xmltodict python-dateutil python-dotenv

How a body is converted
-----------------------
1. Pattern clean-up: Gutenberg block comments, empty filler blocks and
   whitespace-only <p> shells go; [caption] shortcodes become <figure>.
2. Every top-level embed / widget / <table> is cut out of the source
   verbatim and replaced by a <wpmd-raw> placeholder.
3. The tree is walked once with RULES (first match wins, matched nodes
   are not descended into). Each match leaves a token in the tree.
4. markdownify turns what is left into Markdown; tokens are swapped back.
"""
import argparse
import html
import logging
import pathlib
import re
import sys
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from html.parser import HTMLParser
from typing import Callable, Optional

from bs4 import BeautifulSoup, Comment, NavigableString, Tag
from markdownify import MarkdownConverter

import settings
from get_all_posts import load_records
from models import ContentRecord, ConvertedDocument, FatalExtractionError

logger = logging.getLogger(__name__)

# ------- config ----------------------------------------------------------
BLOCK_COMMENT_RE = re.compile(r"<!--\s*/?wp:.*?-->", re.S)
BLOCK_COMMENT_TEXT_RE = re.compile(r"^\s*/?wp:")
FILLER_RES = [
    # empty Gutenberg group shells
    re.compile(r'<div class="wp-block-group[^"]*"[^>]*>\s*'
               r'(?:<div class="wp-block-group__inner-container[^"]*"[^>]*>\s*</div>\s*)?</div>', re.I),
    # old-theme float clearers
    re.compile(r'<(div|br)[^>]*style="\s*clear:\s*both;?\s*"[^>]*>(?:\s*</div>)?', re.I),
]
EMPTY_P_RE = re.compile(r"<p(?:\s[^>]*)?>(?:\s|&nbsp;|&#160;|\xa0|<br\s*/?>)*</p>", re.I)
CAPTION_RE = re.compile(r"\[caption[^\]]*\](.*?)\[/caption\]", re.S | re.I)
CAPTION_IMG_RE = re.compile(r"(?:<a[^>]*>\s*)?<img[^>]*>(?:\s*</a>)?", re.S | re.I)
AUTOP_BLOCK_RE = re.compile(r"<(p|div|h[1-6]|ul|ol|table|figure|blockquote|pre|section)\b", re.I)

RAW_TAG        = "wpmd-raw"
EMBED_TAGS     = {"iframe", "video", "audio", "embed", "object"}
VOID_EMBEDS    = {"embed"}
WIDGET_CLASSES = {"twitter-tweet", "twitter-video", "instagram-media", "tiktok-embed"}
CONTAINER_TAGS = {"div", "figure", "span", "p", "section", "center", "a"}
IGNORABLE_TAGS = {"br", "script", "noscript", "style"}

KNOWN_TAGS = {
    "html", "head", "body", RAW_TAG, "p", "div", "span", "section", "article", "header",
    "footer", "main", "figure", "figcaption", "a", "b", "strong", "i", "em", "u", "s",
    "del", "strike", "sup", "sub", "small", "code", "pre", "kbd", "blockquote", "ul", "ol",
    "li", "dl", "dt", "dd", "br", "hr", "img", "h1", "h2", "h3", "h4", "h5", "h6",
    "script", "style", "noscript", "center", "cite", "abbr", "mark", "q", "table", "thead",
    "tbody", "tfoot", "tr", "td", "th", "caption", "colgroup", "col", "source", "track", "param",
} | EMBED_TAGS

MD_OPTIONS = {"heading_style": "ATX", "bullets": "-", "newline_style": "backslash",
              "escape_misc": False}
# -------------------------------------------------------------------------


# ── 1.  Raw-span capture -------------------------------------------------
def _classes(attrs) -> set[str]:
    return set((dict(attrs).get("class") or "").split())


def keep_verbatim(tag: str, attrs) -> bool:
    if tag in EMBED_TAGS or tag == "table":
        return True
    return tag == "blockquote" and bool(_classes(attrs) & WIDGET_CLASSES)


class RawSpans(HTMLParser):
    """
    Finds the exact source text of each outermost element that must be
    carried through unchanged. Unclosed elements yield no span.
    """

    def __init__(self, source: str, keep=keep_verbatim):
        super().__init__(convert_charrefs=False)
        self.source = source
        self.keep = keep
        self.spans: list[tuple[int, int, str]] = []
        self._line_starts = [0] + [m.end() for m in re.finditer("\n", source)]
        self._open: Optional[str] = None
        self._start = 0
        self._depth = 0

    def _offset(self) -> int:
        line, col = self.getpos()
        return self._line_starts[line - 1] + col

    def handle_starttag(self, tag, attrs):
        if self._open is not None:
            if tag == self._open:
                self._depth += 1
            return
        if not self.keep(tag, attrs):
            return
        start = self._offset()
        if tag in VOID_EMBEDS:
            self.spans.append((start, start + len(self.get_starttag_text()), tag))
            return
        self._open, self._start, self._depth = tag, start, 1

    def handle_startendtag(self, tag, attrs):
        if self._open is None and self.keep(tag, attrs):
            start = self._offset()
            self.spans.append((start, start + len(self.get_starttag_text()), tag))

    def handle_endtag(self, tag):
        if tag != self._open:
            return
        self._depth -= 1
        if self._depth:
            return
        close = self.source.find(">", self._offset())
        if close != -1:
            self.spans.append((self._start, close + 1, tag))
        self._open = None


def stash_raw(source: str, nonce: str) -> tuple[str, dict[str, tuple[str, str]]]:
    """Swap verbatim spans for placeholders; returns (new source, key → (tag, raw))."""
    scanner = RawSpans(source)
    try:
        scanner.feed(source)
        scanner.close()
    except Exception as e:   # HTMLParser gives up on some broken declarations
        logger.info("raw-span scan stopped early (%s); later embeds fall back to re-serialisation", e)

    stash: dict[str, tuple[str, str]] = {}
    out, pos = [], 0
    for start, end, tag in scanner.spans:
        key = f"{nonce}s{len(stash)}"
        stash[key] = (tag, source[start:end])
        out.append(source[pos:start])
        out.append(f'<{RAW_TAG} data-key="{key}"></{RAW_TAG}>')
        pos = end
    out.append(source[pos:])
    return "".join(out), stash


# ── 2.  Pre-processing -------------------------------------------------------
def _caption_to_figure(match: re.Match) -> str:
    inner = match.group(1).strip()
    img = CAPTION_IMG_RE.search(inner)
    if not img:
        return inner
    caption = (inner[:img.start()] + inner[img.end():]).strip()
    if not caption:
        return img.group(0)
    return f"<figure>{img.group(0)}<figcaption>{caption}</figcaption></figure>"


def autop(source: str) -> str:
    """Classic-editor bodies keep paragraphs as blank lines; make them <p>."""
    if AUTOP_BLOCK_RE.search(source):
        return source
    chunks = [c.strip() for c in re.split(r"\n\s*\n", source) if c.strip()]
    return "\n".join("<p>" + c.replace("\n", "<br>\n") + "</p>" for c in chunks)


def preprocess(source: str) -> str:
    source = BLOCK_COMMENT_RE.sub("", source)
    for pattern in FILLER_RES:
        source = pattern.sub("", source)
    source = EMPTY_P_RE.sub("", source)
    return CAPTION_RE.sub(_caption_to_figure, source)


# ── 3.  Rules ----------------------------------------------------------------
@dataclass(frozen=True)
class Rule:
    name: str
    matches: Callable[[object, dict], bool]
    replace: Callable[[object, dict], str]
    block: bool = False


def _node_classes(node) -> set[str]:
    return set(node.get("class") or [])


def _is_raw(node, stash, kinds) -> bool:
    if node.name != RAW_TAG:
        return False
    entry = stash.get(node.get("data-key"))
    return entry is not None and entry[0] in kinds


def is_embed(node, stash) -> bool:
    if not isinstance(node, Tag):
        return False
    if node.name == RAW_TAG:
        return not _is_raw(node, stash, {"table"})
    if node.name in EMBED_TAGS:
        return True
    return node.name == "blockquote" and bool(_node_classes(node) & WIDGET_CLASSES)


def sole_embed(node, stash):
    """The one embed inside a wrapper that holds nothing else meaningful."""
    if not isinstance(node, Tag) or node.name not in CONTAINER_TAGS:
        return None
    found = []

    def walk(el) -> bool:
        for child in el.children:
            if isinstance(child, Comment):
                continue
            if isinstance(child, NavigableString):
                if child.strip():
                    return False
                continue
            if is_embed(child, stash):
                found.append(child)
                if len(found) > 1:
                    return False
            elif child.name in IGNORABLE_TAGS:
                continue
            elif child.name not in CONTAINER_TAGS or not walk(child):
                return False
        return True

    if walk(node) and len(found) == 1:
        return found[0]
    return None


def raw_markup(node, stash) -> str:
    if node.name == RAW_TAG:
        return stash[node["data-key"]][1]
    return str(node)


def _embed_matches(node, stash) -> bool:
    return is_embed(node, stash) or sole_embed(node, stash) is not None


def _embed_replace(node, stash) -> str:
    target = node if is_embed(node, stash) else sole_embed(node, stash)
    return raw_markup(target, stash)


def _is_table(node, stash) -> bool:
    if not isinstance(node, Tag):
        return False
    return node.name == "table" or _is_raw(node, stash, {"table"})


def image_ref(img) -> str:
    src = (img.get("src") or "").strip()
    if not src:
        return ""
    alt = " ".join((img.get("alt") or "").split())
    alt = alt.replace("[", r"\[").replace("]", r"\]")
    src = src.replace(" ", "%20").replace("(", "%28").replace(")", "%29")
    return f"![{alt}]({src})"


def _is_captioned(node, stash) -> bool:
    if not isinstance(node, Tag):
        return False
    if node.name != "figure" and "wp-caption" not in _node_classes(node):
        return False
    return node.find("img") is not None


def _caption_replace(node, stash) -> str:
    ref = image_ref(node.find("img"))
    label = node.find("figcaption") or node.find(class_="wp-caption-text")
    text = " ".join(label.get_text(" ").split()) if label else ""
    if not text:
        return ref
    text = text.replace("*", r"\*")
    return f"{ref}\n*{text}*"


def _is_spacer(node, stash) -> bool:
    if not isinstance(node, Tag):
        return False
    if "wp-block-spacer" in _node_classes(node):
        return True
    return (node.name in {"div", "span"} and node.get("aria-hidden") == "true"
            and node.find(True) is None and not node.get_text(strip=True))


def _is_block_comment(node, stash) -> bool:
    return isinstance(node, Comment) and bool(BLOCK_COMMENT_TEXT_RE.match(node))


RULES = [
    Rule("block-comment", _is_block_comment, lambda node, stash: ""),
    Rule("embed", _embed_matches, _embed_replace, block=True),
    Rule("table", _is_table, raw_markup, block=True),
    Rule("caption", _is_captioned, _caption_replace, block=True),
    Rule("spacer", _is_spacer, lambda node, stash: ""),
    Rule("image", lambda node, stash: isinstance(node, Tag) and node.name == "img",
         lambda node, stash: image_ref(node)),
]


def apply_rules(parent, rules, stash, tokens, nonce) -> None:
    for child in list(parent.children):
        rule = next((r for r in rules if r.matches(child, stash)), None)
        if rule is None:
            if isinstance(child, Tag):
                apply_rules(child, rules, stash, tokens, nonce)
            continue
        replacement = rule.replace(child, stash)
        if not replacement:
            child.extract()
            continue
        token = f"wpmd{nonce}z{len(tokens)}z"
        tokens[token] = (replacement, rule.block)
        child.replace_with(NavigableString(token))


# ── 4.  Body conversion ------------------------------------------------------
def convert_body(source: str, rules=None) -> str:
    """Raw post HTML → Markdown. Malformed input degrades, it never raises."""
    if not source or not source.strip():
        return ""
    rules = RULES if rules is None else rules
    nonce = uuid.uuid4().hex[:10]

    text, stash = stash_raw(preprocess(source), nonce)
    soup = BeautifulSoup(autop(text), "lxml")
    root = soup.body or soup

    unknown = sorted({t.name for t in root.find_all(True)} - KNOWN_TAGS)
    if unknown:
        logger.info("no dedicated rule for <%s>; keeping their text", ">, <".join(unknown))

    tokens: dict[str, tuple[str, bool]] = {}
    apply_rules(root, rules, stash, tokens, nonce)

    md_txt = MarkdownConverter(**MD_OPTIONS).convert_soup(root)
    md_txt = re.sub(r"[ \t]+\n", "\n", md_txt)
    md_txt = re.sub(r"\n{3,}", "\n\n", md_txt)

    for token, (replacement, block) in tokens.items():
        if block:
            md_txt = re.sub(r"\s*" + token + r"\s*",
                            lambda _m, r=replacement: "\n\n" + r + "\n\n", md_txt)
        else:
            md_txt = md_txt.replace(token, replacement)

    md_txt = md_txt.strip()
    return md_txt + "\n" if md_txt else ""


# ── 5.  Plain text (descriptions, feed summaries) --------------------------
TEXT_BLOCK_TAGS = {
    "p", "div", "section", "article", "figure", "figcaption", "blockquote", "pre",
    "ul", "ol", "li", "table", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "hr",
}
URL_RE = re.compile(r"https?://[^\s<>\"']+")
URL_TAIL = ".,;:!?)]}'\""


def _split_urls(text: str):
    pos = 0
    for m in URL_RE.finditer(text):
        url = m.group(0).rstrip(URL_TAIL)
        yield "text", text[pos:m.start()]
        yield "url", url
        pos = m.start() + len(url)
    yield "text", text[pos:]


def plain_text(markup: str) -> str:
    """
    Tag-free text of an HTML fragment, one line per block.

    URLs always end up with whitespace on both sides, whatever markup
    they were glued to in the source.
    """
    if not markup or not markup.strip():
        return ""
    soup = BeautifulSoup(markup, "lxml")
    pieces: list[tuple[str, str]] = []

    def walk(el) -> None:
        for child in el.children:
            if isinstance(child, Comment):
                continue
            if isinstance(child, NavigableString):
                pieces.extend(_split_urls(str(child)))
                continue
            if child.name in {"script", "style", "noscript"}:
                continue
            if child.name == "br":
                pieces.append(("break", ""))
                continue
            if child.name == "a" and child.get("href"):
                label = child.get_text().strip()
                if label == child["href"].strip() or URL_RE.fullmatch(label):
                    pieces.append(("url", label))
                    continue
            block = child.name in TEXT_BLOCK_TAGS
            if block:
                pieces.append(("break", ""))
            walk(child)
            if block:
                pieces.append(("break", ""))

    walk(soup.body or soup)

    out: list[str] = []
    after_url = False
    for kind, text in pieces:
        if kind == "break":
            out.append("\n")
            after_url = False
        elif kind == "url":
            if out and not out[-1][-1:].isspace():
                out.append(" ")
            out.append(text)
            after_url = True
        elif text:
            if after_url and not text[0].isspace():
                out.append(" ")
            out.append(text)
            after_url = False

    lines = (" ".join(line.split()) for line in "".join(out).splitlines())
    return "\n".join(line for line in lines if line)


# ── 6.  Header -----------------------------------------------------------------
def display_date(ts: datetime) -> str:
    ts = ts.astimezone(timezone.utc)
    return f"{ts:%B} {ts.day}, {ts:%Y %H:%M:%S} UTC"


def sortable_date(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def describe(record: ContentRecord, limit: int = settings.DESCRIPTION_LIMIT) -> str:
    text = plain_text(record.excerpt) or plain_text(record.body_markup)
    return " ".join(text.split())[:limit].rstrip()


def build_header(record: ContentRecord) -> dict:
    header = {"title": html.unescape(record.title), "slug": record.slug}
    description = describe(record)
    if description:
        header["description"] = description
    header["pubDate"] = display_date(record.timestamp)
    header["pubDatetime"] = sortable_date(record.timestamp)
    if record.cover_reference:
        header["heroImage"] = record.cover_reference
    if record.taxonomy_labels:
        header["tags"] = sorted(record.taxonomy_labels)
    return header


def convert_record(record: ContentRecord, rules=None) -> ConvertedDocument:
    return ConvertedDocument(
        slug=record.slug,
        header=build_header(record),
        body=convert_body(record.body_markup, rules),
    )


def convert_all(records, out_dir: pathlib.Path, rules=None) -> int:
    done = 0
    for rec in records:
        try:
            dest = convert_record(rec, rules).save(out_dir)
        except Exception as e:
            logger.error("✗ %s – %s", rec.slug, e)
            continue
        done += 1
        logger.info("✓ %s", dest.name)
    return done


def main():
    parser = argparse.ArgumentParser(description="Convert a WordPress export to Markdown")
    parser.add_argument("export", type=pathlib.Path)
    parser.add_argument("--out", type=pathlib.Path, default=settings.OUTPUT_DIR)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s - %(levelname)s - %(message)s")
    try:
        records = load_records(args.export)
    except FatalExtractionError as e:
        sys.exit(f"✗ {e}")
    if not records:
        sys.exit("No published posts found in the export.")

    done = convert_all(records, args.out)
    print(f"\nFinished: {done} of {len(records)} posts → {args.out}")


if __name__ == "__main__":
    main()
