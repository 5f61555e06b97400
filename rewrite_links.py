"""
rewrite_links.py – point converted posts at their localised assets.

Only RESOLVED references are substituted, and only where the whole URI
token matches: https://x/a.png is not touched inside https://x/a.png?w=2.
Anything pending or failed stays as the remote link.
"""
import logging
import pathlib
import re

from models import ConvertedDocument, ReferenceTable, RunReport, Status

logger = logging.getLogger(__name__)

# characters that can't continue a URI token in Markdown or an HTML attribute
URI_END = r"(?![^\s\"'<>()\[\]])"
URI_START = r"(?<![\w/.%-])"


def uri_pattern(uri: str) -> re.Pattern:
    # raw <img> tags keep the HTML-escaped form of the query string
    forms = {uri} | {uri.replace("&", entity) for entity in ("&amp;", "&#038;", "&#38;")}
    alternation = "|".join(re.escape(f) for f in sorted(forms, key=len, reverse=True))
    return re.compile(URI_START + "(?:" + alternation + ")" + URI_END)


def _substitute(value, pattern: re.Pattern, new: str):
    if isinstance(value, list):
        return [_substitute(item, pattern, new) for item in value]
    return pattern.sub(lambda _m: new, value)


def rewrite_document(doc: ConvertedDocument, table: ReferenceTable) -> tuple[bool, list[str]]:
    """Returns (changed, URIs left remote because they didn't resolve)."""
    changed = False
    skipped = []
    for ref in table.for_document(doc.slug):
        if ref.status is not Status.RESOLVED:
            skipped.append(ref.canonical_uri)
            continue
        pattern = uri_pattern(ref.canonical_uri)
        body = _substitute(doc.body, pattern, ref.local_address)
        header = {key: _substitute(value, pattern, ref.local_address)
                  for key, value in doc.header.items()}
        if body != doc.body or header != doc.header:
            doc.body, doc.header = body, header
            changed = True
    return changed, skipped


def rewrite_corpus(docs, table: ReferenceTable, out_dir: pathlib.Path) -> RunReport:
    report = RunReport()
    for doc in docs:
        changed, skipped = rewrite_document(doc, table)
        report.skipped.extend((doc.slug, uri) for uri in skipped)
        if changed:
            doc.save(out_dir)
            report.rewritten += 1
            logger.info("✓ rewrote %s.md", doc.slug)
    return report
