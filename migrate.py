#!/usr/bin/env python3
"""
migrate.py – the whole WordPress → static-site migration in one go

    1. get_all_posts      export.xml → records (aborts on duplicate slugs etc.)
    2. html_to_md         records → <out>/<slug>.md
    3. download_assets    remote images → <assets>/, posts repointed
    4. strip_boilerplate  own promo lines removed (only with --pattern)
    5. _redirects         old permalink → new path, one "old new 301" per line

Usage:
    python migrate.py export.xml [--out content/posts] [--assets public/images]
                                 [--pattern myblog.example ...] [--skip-assets]

Steps 3 and 4 can be re-run on their own (download_assets.py,
strip_boilerplate.py) against the same --out without converting again.
"""
import argparse
import logging
import pathlib
import sys
import urllib.parse as up

import settings
from download_assets import run_loop
from get_all_posts import load_records
from html_to_md import convert_all
from models import FatalExtractionError, RunReport, load_corpus
from strip_boilerplate import default_conversions, strip_corpus

logger = logging.getLogger(__name__)


def redirect_lines(records, post_prefix: str = settings.POST_URL_PREFIX) -> list[str]:
    lines = []
    for rec in records:
        if not rec.permalink:
            continue
        parts = up.urlsplit(rec.permalink)
        old = (parts.path or "/") + (f"?{parts.query}" if parts.query else "")
        new = f"{post_prefix}{rec.slug}/"
        if old != new:
            lines.append(f"{old} {new} 301")
    return lines


def write_redirects(records, path: pathlib.Path, post_prefix: str = settings.POST_URL_PREFIX) -> int:
    lines = redirect_lines(records, post_prefix)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
    return len(lines)


def migrate(export: pathlib.Path, out_dir: pathlib.Path, asset_dir: pathlib.Path,
            patterns=(), handle_base=None, session=None, skip_assets=False,
            redirects: pathlib.Path = None, **loop_opts) -> RunReport:
    records = load_records(export)          # FatalExtractionError stops us before any output

    converted = convert_all(records, out_dir)
    if skip_assets:
        report = RunReport()
    else:
        report = run_loop(out_dir, asset_dir, session=session, **loop_opts)
    report.converted = converted

    if patterns:
        report.lines_removed = strip_corpus(load_corpus(out_dir), patterns, out_dir,
                                            default_conversions(handle_base))
    if redirects is not None:
        count = write_redirects(records, redirects)
        logger.info("✓ %d redirect(s) → %s", count, redirects)
    return report


def main():
    parser = argparse.ArgumentParser(description="Migrate a WordPress export to a Markdown corpus")
    parser.add_argument("export", type=pathlib.Path)
    parser.add_argument("--out", type=pathlib.Path, default=settings.OUTPUT_DIR)
    parser.add_argument("--assets", type=pathlib.Path, default=settings.ASSET_DIR)
    parser.add_argument("--prefix", default=settings.ASSET_URL_PREFIX)
    parser.add_argument("--workers", type=int, default=settings.MAX_WORKERS)
    parser.add_argument("--pattern", action="append", default=None)
    parser.add_argument("--handle-base", default=None)
    parser.add_argument("--redirects", type=pathlib.Path, default=pathlib.Path("_redirects"))
    parser.add_argument("--skip-assets", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s - %(levelname)s - %(message)s")
    try:
        report = migrate(args.export, args.out, args.assets,
                         patterns=args.pattern or settings.OWNER_PATTERNS,
                         handle_base=args.handle_base,
                         skip_assets=args.skip_assets,
                         redirects=args.redirects,
                         url_prefix=args.prefix,
                         max_workers=args.workers)
    except FatalExtractionError as e:
        sys.exit(f"✗ {e}")

    print(f"\nFinished: {report.summary()}")
    if report.failures:
        print(f"  {len(report.failures)} asset(s) still remote – see {args.out / settings.FAILURES_NAME}")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit("\nInterrupted by user.")
