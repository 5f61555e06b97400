"""
find_assets.py – every remote image a converted post still points at.

Looks in three places: Markdown image syntax, <img src> left over in raw
blocks, and the heroImage header field. Only http(s) URIs count, so a
post whose images were already localised yields nothing.
"""
import logging
import re
import urllib.parse as up
from typing import Iterable, Optional

from models import ConvertedDocument, ReferenceTable

logger = logging.getLogger(__name__)

re_md_image = re.compile(r'!\[(?:\\.|[^\]\\])*\]\(\s*<?([^)\s>]+)>?(?:\s+"[^"]*")?\s*\)')
re_img_src  = re.compile(r'''<img\b[^>]*?\bsrc=["']([^"']+)["']''', re.I)
COVER_KEYS  = ("heroImage",)
FETCHABLE   = {"http", "https"}
# "&" as WordPress writes it inside attributes; rewrite_links.uri_pattern matches the same forms
ATTR_AMP    = re.compile(r"&(?:amp|#0?38);")


def canonical_uri(raw: str, escaped: bool = False) -> Optional[str]:
    """
    Normalised key for a reference, or None if it isn't fetchable.

    Markdown targets are already plain text. Attribute values (escaped=True)
    only get their "&" entities decoded: a full html.unescape would read
    "&param=" as "¶m=".
    """
    uri = raw.strip()
    if escaped:
        uri = ATTR_AMP.sub("&", uri)
    try:
        parts = up.urlsplit(uri)
    except ValueError:
        return None
    if parts.scheme.lower() not in FETCHABLE or not parts.netloc:
        return None
    return uri


def scan_document(doc: ConvertedDocument) -> set[str]:
    found = set()
    for pattern, escaped in ((re_md_image, False), (re_img_src, True)):
        for raw in pattern.findall(doc.body):
            uri = canonical_uri(raw, escaped)
            if uri:
                found.add(uri)
    for key in COVER_KEYS:
        value = doc.header.get(key)
        if isinstance(value, str):
            uri = canonical_uri(value)
            if uri:
                found.add(uri)
    return found


def scan_corpus(docs: Iterable[ConvertedDocument], table: Optional[ReferenceTable] = None) -> ReferenceTable:
    table = ReferenceTable() if table is None else table
    for doc in docs:
        for uri in sorted(scan_document(doc)):
            table.observe(uri, doc.slug)
    logger.info("Found %d distinct remote assets", len(table))
    return table
