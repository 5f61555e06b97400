"""
settings.py – shared config for the migration scripts.

Every value can be overridden from the environment (or a .env file next
to the scripts), e.g.

    WP2MD_OUTPUT_DIR=site/src/content/blog
    WP2MD_OWNER_PATTERNS=myblog.example,twitter.com/me
"""
import os
import pathlib

from dotenv import load_dotenv

load_dotenv()


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.environ.get(name, default)
    return [part.strip() for part in raw.split(",") if part.strip()]


# ── Config -------------------------------------------------------------
OUTPUT_DIR       = pathlib.Path(os.environ.get("WP2MD_OUTPUT_DIR", "content/posts"))
ASSET_DIR        = pathlib.Path(os.environ.get("WP2MD_ASSET_DIR", "public/images"))
ASSET_URL_PREFIX = os.environ.get("WP2MD_ASSET_URL_PREFIX", "/images/")
POST_URL_PREFIX  = os.environ.get("WP2MD_POST_URL_PREFIX", "/posts/")

POST_TYPES       = tuple(_env_list("WP2MD_POST_TYPES", "post"))
OWNER_PATTERNS   = _env_list("WP2MD_OWNER_PATTERNS")
HANDLE_BASE_URL  = os.environ.get("WP2MD_HANDLE_BASE_URL", "")   # e.g. https://twitter.com/

MAX_WORKERS      = int(os.environ.get("WP2MD_MAX_WORKERS", "8"))
REQUEST_TIMEOUT  = float(os.environ.get("WP2MD_REQUEST_TIMEOUT", "30"))
USER_AGENT       = os.environ.get("WP2MD_USER_AGENT", "wp2md/1.0")
MAX_REDIRECTS    = 5

DESCRIPTION_LIMIT = 160                # characters, after newline flattening
MANIFEST_NAME     = "manifest.json"    # lives inside ASSET_DIR
FAILURES_NAME     = "failures.json"    # lives inside OUTPUT_DIR
