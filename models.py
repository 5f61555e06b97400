"""
models.py – the records that flow between the migration phases.

    ContentRecord      one published post, as pulled from the export
    ConvertedDocument  one <slug>.md file: ordered header + Markdown body
    ExternalReference  one remote asset URI and what became of it
    ReferenceTable     every ExternalReference of a run, keyed by URI
"""
import enum
import json
import logging
import pathlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class FatalExtractionError(RuntimeError):
    """The export can't be turned into a consistent record set."""


# ── Records ------------------------------------------------------------
@dataclass(frozen=True)
class ContentRecord:
    id: str
    title: str
    slug: str
    timestamp: datetime                 # always tz-aware, UTC
    body_markup: str
    excerpt: str = ""
    taxonomy_labels: frozenset = frozenset()
    cover_reference: Optional[str] = None
    permalink: Optional[str] = None


# ── Converted documents ------------------------------------------------
QUOTED_KEYS = {"title", "description"}
FENCE = "---"


@dataclass
class ConvertedDocument:
    slug: str
    header: dict = field(default_factory=dict)   # insertion order is output order
    body: str = ""

    def render(self) -> str:
        lines = [FENCE]
        for key, value in self.header.items():
            if isinstance(value, list):
                lines.append(f"{key}:")
                lines.extend(f"  - {json.dumps(item, ensure_ascii=False)}" for item in value)
            elif key in QUOTED_KEYS:
                lines.append(f"{key}: {json.dumps(value, ensure_ascii=False)}")
            else:
                lines.append(f"{key}: {value}")
        lines.append(FENCE)
        return "\n".join(lines) + "\n\n" + self.body

    @classmethod
    def parse(cls, slug: str, text: str) -> "ConvertedDocument":
        """Inverse of render(); raises ValueError on a file it didn't write."""
        if not text.startswith(FENCE + "\n"):
            raise ValueError(f"{slug}: missing header fence")
        end = text.find("\n" + FENCE + "\n", len(FENCE))
        if end == -1:
            raise ValueError(f"{slug}: unterminated header")

        header: dict = {}
        current_list = None
        for line in text[len(FENCE) + 1:end + 1].splitlines():
            if not line.strip():
                continue
            if line.startswith("  - "):
                if current_list is None:
                    raise ValueError(f"{slug}: list item outside a list: {line!r}")
                current_list.append(_parse_scalar(line[4:]))
                continue
            key, sep, value = line.partition(":")
            if not sep:
                raise ValueError(f"{slug}: bad header line {line!r}")
            value = value.strip()
            if value:
                header[key] = _parse_scalar(value)
                current_list = None
            else:
                current_list = header[key] = []

        body = text[end + len(FENCE) + 2:]
        if body.startswith("\n"):
            body = body[1:]
        return cls(slug=slug, header=header, body=body)

    @classmethod
    def load(cls, path: pathlib.Path) -> "ConvertedDocument":
        return cls.parse(path.stem, path.read_text(encoding="utf-8"))

    def save(self, directory: pathlib.Path) -> pathlib.Path:
        directory.mkdir(parents=True, exist_ok=True)
        dest = directory / f"{self.slug}.md"
        dest.write_text(self.render(), encoding="utf-8")
        return dest


def _parse_scalar(value: str) -> str:
    if value.startswith('"'):
        return json.loads(value)
    return value


def load_corpus(directory: pathlib.Path) -> list[ConvertedDocument]:
    """Every <slug>.md under directory; unreadable files are logged and left out."""
    docs = []
    for path in sorted(directory.glob("*.md")):
        try:
            docs.append(ConvertedDocument.load(path))
        except (OSError, ValueError) as e:
            logger.error("✗ %s – %s", path.name, e)
    return docs


# ── External references ------------------------------------------------
class Status(enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class ExternalReference:
    canonical_uri: str
    discovered_in: set = field(default_factory=set)
    local_address: Optional[str] = None
    status: Status = Status.PENDING
    reason: str = ""

    def resolve(self, local_address: str) -> None:
        self._leave_pending()
        self.local_address = local_address
        self.status = Status.RESOLVED

    def fail(self, reason: str) -> None:
        self._leave_pending()
        self.reason = reason
        self.status = Status.FAILED

    def _leave_pending(self) -> None:
        if self.status is not Status.PENDING:
            raise RuntimeError(
                f"{self.canonical_uri} already {self.status.value}, can't transition again"
            )


class ReferenceTable:
    """All references of one run: populate → resolve → drain."""

    def __init__(self) -> None:
        self._refs: dict[str, ExternalReference] = {}

    def observe(self, uri: str, slug: str) -> ExternalReference:
        ref = self._refs.get(uri)
        if ref is None:
            ref = self._refs[uri] = ExternalReference(canonical_uri=uri)
        ref.discovered_in.add(slug)
        return ref

    def get(self, uri: str) -> Optional[ExternalReference]:
        return self._refs.get(uri)

    def __iter__(self) -> Iterator[ExternalReference]:
        return iter(self._refs.values())

    def __len__(self) -> int:
        return len(self._refs)

    def __contains__(self, uri: str) -> bool:
        return uri in self._refs

    def with_status(self, status: Status) -> list[ExternalReference]:
        return [ref for ref in self._refs.values() if ref.status is status]

    def for_document(self, slug: str) -> list[ExternalReference]:
        return [ref for ref in self._refs.values() if slug in ref.discovered_in]

    def drain(self) -> list[dict]:
        """Everything that did not resolve, for the end-of-run failure list."""
        out = []
        for ref in sorted(self._refs.values(), key=lambda r: r.canonical_uri):
            if ref.status is Status.RESOLVED:
                continue
            out.append({
                "uri":       ref.canonical_uri,
                "status":    ref.status.value,
                "reason":    ref.reason or "not attempted",
                "documents": sorted(ref.discovered_in),
            })
        return out


@dataclass
class RunReport:
    converted: int = 0
    resolved: int = 0
    failed: int = 0
    rewritten: int = 0
    lines_removed: int = 0
    failures: list = field(default_factory=list)
    skipped: list = field(default_factory=list)     # (slug, uri) left as remote links

    def summary(self) -> str:
        return (f"{self.converted} converted, {self.resolved} assets resolved, "
                f"{self.failed} failed, {self.rewritten} documents rewritten, "
                f"{len(self.skipped)} links left remote, "
                f"{self.lines_removed} boilerplate lines removed")
