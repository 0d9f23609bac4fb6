from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import timezone
from email.utils import format_datetime, parsedate_to_datetime
from pathlib import Path
import logging

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class PackageRecord:
    """Holds the fields of one index entry that the mirror cares about."""
    name: str
    version: str # e.g. "1.0_1"
    architecture: str # e.g. "x86_64", "noarch"
    sha256: bytes = b"" # empty for entries without a verifiable artifact

    @property
    def pkgver(self) -> str:
        return f"{self.name}-{self.version}"

    @property
    def filename(self) -> str:
        return f"{self.pkgver}.{self.architecture}.xbps"

    @property
    def signature_filename(self) -> str:
        return self.filename + ".sig"


@dataclass
class IndexDiff:
    """Packages that appeared or disappeared between two snapshots."""
    added: list[PackageRecord] = field(default_factory=list)
    deleted: list[PackageRecord] = field(default_factory=list)

    def __bool__(self):
        return bool(self.added or self.deleted)


class IndexSnapshot(Mapping):
    """Immutable mapping of package name -> PackageRecord."""

    def __init__(self, records=None):
        self._records = dict(records or {})

    def __getitem__(self, name: str) -> PackageRecord:
        return self._records[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self):
        return f"IndexSnapshot({len(self._records)} packages)"

    def diff(self, other: "IndexSnapshot | None") -> IndexDiff:
        """
        Computes the changes needed to go from this snapshot to `other`.
        A version change shows up in both lists: the new record as added,
        the old one as deleted.
        """
        other = other if other is not None else IndexSnapshot()
        result = IndexDiff()
        for name in sorted(other):
            new = other[name]
            old = self._records.get(name)
            if old is None:
                result.added.append(new)
            elif old.version != new.version:
                result.added.append(new)
                result.deleted.append(old)
        for name in sorted(self._records):
            if name not in other:
                result.deleted.append(self._records[name])
        return result


@dataclass
class Validators:
    """Conditional GET state for one remote resource."""
    etag: str = ""
    last_modified: str = ""

    def request_headers(self) -> dict[str, str]:
        headers = {}
        if self.etag:
            headers["If-None-Match"] = self.etag
        if self.last_modified:
            headers["If-Modified-Since"] = self.last_modified
        return headers

    def update_from(self, response) -> None:
        """Copies ETag and Last-Modified from a successful response."""
        self.etag = response.headers.get("ETag", "") or ""
        self.last_modified = ""
        value = response.headers.get("Last-Modified")
        if value:
            try:
                date = parsedate_to_datetime(value)
                if date.tzinfo is None:
                    date = date.replace(tzinfo=timezone.utc)
                self.last_modified = format_datetime(date.astimezone(timezone.utc), usegmt=True)
            except (TypeError, ValueError) as e:
                logger.warning(f"Failed to parse Last-Modified '{value}' for {response.url}: {e}")

    def clear(self) -> None:
        self.etag = ""
        self.last_modified = ""


@dataclass
class DownloadJob:
    """Represents a file to be downloaded into the mirror."""
    url: str
    destination: Path
    sha256: bytes = b"" # Optional, for verification

    @property
    def filename(self) -> str:
        return self.destination.name

    # One job per destination file
    def __hash__(self):
        return hash(self.destination)

    def __eq__(self, other):
        if not isinstance(other, DownloadJob):
            return NotImplemented
        return self.destination == other.destination


@dataclass
class DownloadResult:
    job: DownloadJob
    size: int = 0
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
