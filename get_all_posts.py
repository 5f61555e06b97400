#!/usr/bin/env python3
"""
get_all_posts.py – pull every published post out of a WordPress export
(WXR) or a plain RSS 2.0 feed, and dump the index to posts.csv

Usage:
    python get_all_posts.py export.xml [--csv posts.csv]
"""
import argparse
import csv
import logging
import pathlib
import re
import sys
import urllib.parse as up
from datetime import datetime, timezone

import xmltodict
from dateutil.parser import parse as parse_date

import settings
from models import ContentRecord, FatalExtractionError

logger = logging.getLogger(__name__)

WP_DATE_FMT  = "%Y-%m-%d %H:%M:%S"
ZERO_DATE    = "0000-00-00 00:00:00"
LABEL_KINDS  = {"category", "post_tag"}
SKIP_LABELS  = {"uncategorized"}                 # WordPress' default category nicename
FORCE_LIST   = ("item", "category", "wp:postmeta")


# ── 1.  Small helpers ----------------------------------------------------
def _text(node) -> str:
    """xmltodict gives str, None, or {'@attr': …, '#text': …} for an element."""
    if node is None:
        return ""
    if isinstance(node, dict):
        return (node.get("#text") or "").strip()
    return str(node).strip()


def slugify(text: str) -> str:
    """Make a URL-safe slug (lowercase, dashes)."""
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def _wp_date(value: str):
    if not value or value == ZERO_DATE:
        return None
    return datetime.strptime(value, WP_DATE_FMT).replace(tzinfo=timezone.utc)


def _rfc_date(value: str):
    if not value:
        return None
    parsed = parse_date(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ── 2.  WXR ------------------------------------------------------------------
def _channel_items(doc: dict) -> list[dict]:
    channel = doc["rss"].get("channel")
    if not isinstance(channel, dict):
        return []
    return [item for item in channel.get("item") or [] if isinstance(item, dict)]


def build_attachments_map(items: list[dict]) -> dict[str, str]:
    """attachment post_id → attachment_url"""
    attachments = {}
    for item in items:
        if _text(item.get("wp:post_type")) != "attachment":
            continue
        post_id = _text(item.get("wp:post_id"))
        url = _text(item.get("wp:attachment_url"))
        if post_id and url:
            attachments[post_id] = url
    return attachments


def _postmeta(item: dict, key: str) -> str:
    for meta in item.get("wp:postmeta") or []:
        if _text(meta.get("wp:meta_key")) == key:
            return _text(meta.get("wp:meta_value"))
    return ""


def _labels(item: dict) -> frozenset:
    labels = set()
    for cat in item.get("category") or []:
        if not isinstance(cat, dict):
            continue
        if cat.get("@domain") not in LABEL_KINDS:
            continue
        if cat.get("@nicename", "").lower() in SKIP_LABELS:
            continue
        label = _text(cat)
        if label:
            labels.add(label)
    return frozenset(labels)


def wxr_record(item: dict, attachments: dict[str, str]) -> ContentRecord:
    post_id = _text(item.get("wp:post_id"))
    title = _text(item.get("title"))
    if not title:
        raise FatalExtractionError(f"post {post_id or '?'} has no title")

    timestamp = (_wp_date(_text(item.get("wp:post_date_gmt")))
                 or _wp_date(_text(item.get("wp:post_date")))
                 or _rfc_date(_text(item.get("pubDate"))))
    if timestamp is None:
        raise FatalExtractionError(f"post {post_id or title!r} has no publish date")

    slug = up.unquote(_text(item.get("wp:post_name"))) or slugify(title)
    if not slug:
        raise FatalExtractionError(f"post {post_id or title!r}: can't derive a slug")

    cover = None
    thumb_id = _postmeta(item, "_thumbnail_id")
    if thumb_id:
        cover = attachments.get(thumb_id)
        if cover is None:
            logger.debug("%s: featured image %s not among attachments", slug, thumb_id)

    return ContentRecord(
        id=post_id or slug,
        title=title,
        slug=slug,
        timestamp=timestamp,
        body_markup=_text(item.get("content:encoded")),
        excerpt=_text(item.get("excerpt:encoded")),
        taxonomy_labels=_labels(item),
        cover_reference=cover,
        permalink=_text(item.get("link")) or None,
    )


def read_wxr(doc: dict, post_types=None) -> list[ContentRecord]:
    post_types = tuple(post_types or settings.POST_TYPES)
    items = _channel_items(doc)
    attachments = build_attachments_map(items)
    logger.info("Found %d attachments in export", len(attachments))

    records = []
    for item in items:
        if _text(item.get("wp:post_type")) not in post_types:
            continue
        if _text(item.get("wp:status")) != "publish":
            continue
        records.append(wxr_record(item, attachments))
    return records


# ── 3.  Plain RSS feed ---------------------------------------------------------
def _slug_from_link(link: str) -> str:
    path = up.urlsplit(link).path.rstrip("/")
    last = up.unquote(path.rsplit("/", 1)[-1]) if path else ""
    return slugify(re.sub(r"\.html?$", "", last))


def feed_record(item: dict) -> ContentRecord:
    title = _text(item.get("title"))
    link = _text(item.get("link"))
    if not title:
        raise FatalExtractionError(f"feed item {link or '?'} has no title")

    timestamp = _rfc_date(_text(item.get("pubDate")) or _text(item.get("dc:date")))
    if timestamp is None:
        raise FatalExtractionError(f"feed item {title!r} has no pubDate")

    slug = _slug_from_link(link) or slugify(title)
    if not slug:
        raise FatalExtractionError(f"feed item {title!r}: can't derive a slug")

    body = _text(item.get("content:encoded"))
    summary = _text(item.get("description"))
    cover = None
    enclosure = item.get("enclosure")
    if isinstance(enclosure, dict) and enclosure.get("@type", "").startswith("image/"):
        cover = enclosure.get("@url") or None

    return ContentRecord(
        id=_text(item.get("guid")) or link or slug,
        title=title,
        slug=slug,
        timestamp=timestamp,
        body_markup=body or summary,
        excerpt=summary if body else "",
        taxonomy_labels=frozenset(_text(c) for c in item.get("category") or [] if _text(c)),
        cover_reference=cover,
        permalink=link or None,
    )


def read_feed(doc: dict) -> list[ContentRecord]:
    items = _channel_items(doc)
    return [feed_record(item) for item in items]


# ── 4.  Entry point ------------------------------------------------------------
def check_unique(records: list[ContentRecord]) -> None:
    seen: dict[str, str] = {}
    for rec in records:
        if rec.slug in seen:
            raise FatalExtractionError(
                f"duplicate slug {rec.slug!r} (items {seen[rec.slug]} and {rec.id})")
        seen[rec.slug] = rec.id


def parse_export(text: str, post_types=None) -> list[ContentRecord]:
    try:
        doc = xmltodict.parse(text, force_list=FORCE_LIST)
    except Exception as e:
        raise FatalExtractionError(f"export is not valid XML: {e}") from e
    if "rss" not in doc:
        raise FatalExtractionError("export has no <rss> root")
    if not isinstance(doc["rss"], dict):
        raise FatalExtractionError("export's <rss> root is empty")

    if "@xmlns:wp" in doc["rss"]:
        records = read_wxr(doc, post_types)
    else:
        records = read_feed(doc)
    check_unique(records)
    return records


def load_records(path: pathlib.Path, post_types=None) -> list[ContentRecord]:
    records = parse_export(path.read_text(encoding="utf-8"), post_types)
    logger.info("Extracted %d published records from %s", len(records), path)
    return records


def main():
    parser = argparse.ArgumentParser(description="Dump the post index of a WordPress export")
    parser.add_argument("export", type=pathlib.Path)
    parser.add_argument("--csv", type=pathlib.Path, default=pathlib.Path("posts.csv"))
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    try:
        records = load_records(args.export)
    except FatalExtractionError as e:
        sys.exit(f"✗ {e}")

    with open(args.csv, "w", newline="", encoding="utf-8") as fh:
        wr = csv.writer(fh)
        wr.writerow(["id", "slug", "title", "timestamp", "labels", "cover", "permalink"])
        for rec in records:
            wr.writerow([rec.id, rec.slug, rec.title, rec.timestamp.isoformat(),
                         "|".join(sorted(rec.taxonomy_labels)),
                         rec.cover_reference or "", rec.permalink or ""])

    print(f"Done → {args.csv} ({len(records):,} posts)")


if __name__ == "__main__":
    main()
