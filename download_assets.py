#!/usr/bin/env python3
"""
download_assets.py – fetch every remote image the converted posts point
at, exactly once, and repoint the posts at the local copies.

Usage:
    python download_assets.py [--out content/posts] [--assets public/images]

Folder layout
-------------
public/images/
├─ sunset.jpg
├─ sunset-3f2a9c1d.jpg      ← a different URI that also ends in sunset.jpg
└─ manifest.json            ← {file name: source URI}

Safe to re-run: a file already on disk is never fetched again, and posts
that were rewritten no longer mention the remote URI. Nothing is retried
automatically; fix what failures.json lists and run it again.
"""
import argparse
import hashlib
import json
import logging
import pathlib
import re
import sys
import urllib.parse as up
from concurrent.futures import ThreadPoolExecutor, as_completed

import requests

import settings
from find_assets import scan_corpus
from models import ExternalReference, ReferenceTable, RunReport, Status, load_corpus
from rewrite_links import rewrite_corpus

logger = logging.getLogger(__name__)

REDIRECT_CODES = {301, 302, 303, 307, 308}
CHUNK = 65536
MAX_NAME_LEN = 120                 # well under the usual 255-byte file-name limit


class AssetFetchError(Exception):
    """One reference could not be fetched; the message is the recorded reason."""


# ── 1.  Session ----------------------------------------------------------
def make_session() -> requests.Session:
    s = requests.Session()
    s.headers["User-Agent"] = settings.USER_AGENT
    return s


# ── 2.  Naming -------------------------------------------------------------
def slugify(text: str) -> str:
    """Make a filename-safe slug (preserve dots & dashes)."""
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", text).strip("_")


def local_name(uri: str) -> str:
    name = slugify(up.unquote(up.urlsplit(uri).path.rsplit("/", 1)[-1])) or "asset"
    if len(name) <= MAX_NAME_LEN:
        return name
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem or len(ext) > 10:
        stem, ext = name, ""
    # room for "-<hash>" and the extension
    short = stem[:MAX_NAME_LEN - 10 - len(ext)] + (f".{ext}" if ext else "")
    return disambiguate(short, uri)


def disambiguate(name: str, uri: str) -> str:
    digest = hashlib.sha256(uri.encode("utf-8")).hexdigest()[:8]
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        return f"{name}-{digest}"
    return f"{stem}-{digest}.{ext}"


def assign_names(uris, manifest: dict[str, str]) -> dict[str, str]:
    """
    uri → file name, decided before anything is fetched.

    A name already in the manifest stays with its URI. Otherwise the first
    URI (in sorted order) to want a name gets it and later ones get the
    hashed variant, so the same corpus always yields the same names.
    """
    owners = dict(manifest)
    by_uri = {uri: name for name, uri in manifest.items()}
    names = {}
    for uri in sorted(uris):
        name = by_uri.get(uri)
        if name is None:
            name = local_name(uri)
            if owners.get(name, uri) != uri:
                name = disambiguate(name, uri)
            owners[name] = uri
        names[uri] = name
    return names


def load_manifest(asset_dir: pathlib.Path) -> dict[str, str]:
    path = asset_dir / settings.MANIFEST_NAME
    if not path.is_file():
        return {}
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


def save_manifest(asset_dir: pathlib.Path, manifest: dict[str, str]) -> None:
    with open(asset_dir / settings.MANIFEST_NAME, "w", encoding="utf-8") as fh:
        json.dump(manifest, fh, indent=2, sort_keys=True)
        fh.write("\n")


# ── 3.  Fetch --------------------------------------------------------------
def save_body(r, dest: pathlib.Path) -> None:
    tmp = dest.with_name(dest.name + ".part")
    try:
        with open(tmp, "wb") as fh:
            for chunk in r.iter_content(chunk_size=CHUNK):
                fh.write(chunk)
        tmp.replace(dest)
    except (requests.RequestException, OSError) as e:
        tmp.unlink(missing_ok=True)
        raise AssetFetchError(f"download interrupted: {e}") from e


def fetch_asset(session, uri: str, dest: pathlib.Path,
                timeout: float = settings.REQUEST_TIMEOUT,
                max_redirects: int = settings.MAX_REDIRECTS) -> str:
    """GET uri into dest, following up to max_redirects hops. Returns the final URL."""
    url, hops = uri, 0
    while True:
        try:
            r = session.get(url, allow_redirects=False, timeout=timeout, stream=True)
        except requests.RequestException as e:
            raise AssetFetchError(str(e) or type(e).__name__) from e
        try:
            location = r.headers.get("Location")
            if r.status_code in REDIRECT_CODES and location:
                hops += 1
                if hops > max_redirects:
                    raise AssetFetchError("too many redirects")
                url = up.urljoin(url, location)
                continue
            if not 200 <= r.status_code < 300:
                raise AssetFetchError(f"HTTP {r.status_code}")
            save_body(r, dest)
            return url
        finally:
            r.close()


def resolve_one(ref: ExternalReference, name: str, asset_dir: pathlib.Path, session,
                url_prefix: str, timeout: float, max_redirects: int) -> None:
    """Never raises for a bad reference: whatever goes wrong is recorded on ref."""
    dest = asset_dir / name
    try:
        if dest.exists():
            ref.resolve(url_prefix + name)
            logger.debug("  ↳ already on disk %s", name)
            return
        final = fetch_asset(session, ref.canonical_uri, dest, timeout, max_redirects)
    except (AssetFetchError, OSError, ValueError) as e:
        ref.fail(str(e) or type(e).__name__)
        logger.warning("  ↳ failed %s: %s", ref.canonical_uri, e)
        return
    ref.resolve(url_prefix + name)
    if final != ref.canonical_uri:
        logger.debug("  ↳ %s redirected to %s", ref.canonical_uri, final)
    logger.info("  ↳ saved %s", name)


def localize(table: ReferenceTable, asset_dir: pathlib.Path, session=None,
             url_prefix: str = settings.ASSET_URL_PREFIX,
             max_workers: int = settings.MAX_WORKERS,
             timeout: float = settings.REQUEST_TIMEOUT,
             max_redirects: int = settings.MAX_REDIRECTS) -> None:
    """Move every PENDING reference in table to RESOLVED or FAILED."""
    pending = table.with_status(Status.PENDING)
    if not pending:
        return
    asset_dir.mkdir(parents=True, exist_ok=True)
    manifest = load_manifest(asset_dir)
    names = assign_names([ref.canonical_uri for ref in pending], manifest)
    session = session or make_session()

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [
            pool.submit(resolve_one, ref, names[ref.canonical_uri], asset_dir, session,
                        url_prefix, timeout, max_redirects)
            for ref in pending
        ]
        for fut in as_completed(futures):
            fut.result()

    updated = dict(manifest)
    for ref in pending:
        if ref.status is Status.RESOLVED:
            updated[names[ref.canonical_uri]] = ref.canonical_uri
    if updated != manifest:
        save_manifest(asset_dir, updated)


# ── 4.  The scan → fetch → rewrite loop -----------------------------------
def write_failures(out_dir: pathlib.Path, failures: list[dict]) -> None:
    path = out_dir / settings.FAILURES_NAME
    if not failures:
        path.unlink(missing_ok=True)
        return
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(failures, fh, ensure_ascii=False, indent=2)


def run_loop(out_dir: pathlib.Path, asset_dir: pathlib.Path, session=None, **opts) -> RunReport:
    docs = load_corpus(out_dir)
    table = scan_corpus(docs)
    localize(table, asset_dir, session=session, **opts)

    report = rewrite_corpus(docs, table, out_dir)
    report.resolved = len(table.with_status(Status.RESOLVED))
    report.failed = len(table.with_status(Status.FAILED))
    report.failures = table.drain()
    for entry in report.failures:
        logger.warning("✗ %s – %s (in %s)", entry["uri"], entry["reason"],
                       ", ".join(entry["documents"]))
    write_failures(out_dir, report.failures)
    return report


def main():
    parser = argparse.ArgumentParser(description="Localise remote images of a converted corpus")
    parser.add_argument("--out", type=pathlib.Path, default=settings.OUTPUT_DIR)
    parser.add_argument("--assets", type=pathlib.Path, default=settings.ASSET_DIR)
    parser.add_argument("--prefix", default=settings.ASSET_URL_PREFIX)
    parser.add_argument("--workers", type=int, default=settings.MAX_WORKERS)
    parser.add_argument("--timeout", type=float, default=settings.REQUEST_TIMEOUT)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s - %(levelname)s - %(message)s")
    if not args.out.is_dir():
        sys.exit(f"✗ {args.out} missing – run html_to_md.py first.")

    report = run_loop(args.out, args.assets, url_prefix=args.prefix,
                      max_workers=args.workers, timeout=args.timeout)
    print(f"\nFinished: {report.summary()}")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit("\nInterrupted by user.")
