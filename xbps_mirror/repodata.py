import bz2
import gzip
import io
import logging
import lzma
import plistlib
import tarfile
from pathlib import Path
from xml.parsers.expat import ExpatError

import zstandard

from .models import IndexSnapshot, PackageRecord

logger = logging.getLogger(__name__)

INDEX_MEMBER = "index.plist"

# Leading magic bytes of the compressors xbps-rindex can produce
_ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
_GZIP_MAGIC = b"\x1f\x8b"
_XZ_MAGIC = b"\xfd7zXZ\x00"
_BZIP2_MAGIC = b"BZh"

# index.plist property -> PackageRecord field
FIELD_MAP = {
    "pkgver": "pkgver",
    "architecture": "architecture",
    "filename-sha256": "sha256",
}


class DecodeError(Exception):
    """Raised when a repodata/stagedata blob cannot be decoded."""


def decompress(content: bytes) -> bytes:
    """Undoes whatever compression the blob was written with."""
    try:
        if content.startswith(_ZSTD_MAGIC):
            # decompressobj copes with frames that do not record their content size
            return zstandard.ZstdDecompressor().decompressobj().decompress(content)
        if content.startswith(_GZIP_MAGIC):
            return gzip.decompress(content)
        if content.startswith(_XZ_MAGIC):
            return lzma.decompress(content)
        if content.startswith(_BZIP2_MAGIC):
            return bz2.decompress(content)
    except (zstandard.ZstdError, gzip.BadGzipFile, lzma.LZMAError, OSError, EOFError, ValueError) as e:
        raise DecodeError(f"decompression failed: {e}") from e
    return content


def _extract_index(archive: bytes) -> bytes:
    try:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:") as tar:
            for member in tar:
                if member.isfile() and member.name.lstrip("./") == INDEX_MEMBER:
                    f = tar.extractfile(member)
                    if f is None:
                        break
                    return f.read()
    except (tarfile.TarError, EOFError) as e:
        raise DecodeError(f"not a repodata archive: {e}") from e
    raise DecodeError(f"archive has no {INDEX_MEMBER}")


def _split_pkgver(name: str, pkgver: str) -> str:
    """Returns the version part of a pkgver like 'foo-1.0_1'."""
    prefix = name + "-"
    if pkgver.startswith(prefix) and len(pkgver) > len(prefix):
        return pkgver[len(prefix):]
    if "-" in pkgver:
        return pkgver.rsplit("-", 1)[1]
    return ""


def parse_index(content: bytes) -> IndexSnapshot:
    """Parses the index.plist dictionary into a snapshot."""
    try:
        index = plistlib.loads(content)
    except (plistlib.InvalidFileException, ExpatError, ValueError, TypeError, OverflowError) as e:
        raise DecodeError(f"invalid {INDEX_MEMBER}: {e}") from e
    if not isinstance(index, dict):
        raise DecodeError(f"{INDEX_MEMBER} is not a dictionary")

    records = {}
    for name, props in index.items():
        if not isinstance(props, dict):
            logger.warning(f"Skipping index entry '{name}': not a dictionary")
            continue
        values = {field: props.get(key) for key, field in FIELD_MAP.items()}
        pkgver, architecture = values["pkgver"], values["architecture"]
        if not isinstance(pkgver, str) or not isinstance(architecture, str) or not pkgver or not architecture:
            logger.warning(f"Skipping incomplete index entry '{name}'")
            continue
        version = _split_pkgver(name, pkgver)
        if not version:
            logger.warning(f"Skipping index entry '{name}' with malformed pkgver '{pkgver}'")
            continue

        digest = values["sha256"] or ""
        if not isinstance(digest, str):
            raise DecodeError(f"{name}: filename-sha256 is not a string")
        try:
            sha256 = bytes.fromhex(digest)
        except ValueError as e:
            raise DecodeError(f"{name}: could not decode digest '{digest}'") from e

        records[name] = PackageRecord(
            name=name,
            version=version,
            architecture=architecture,
            sha256=sha256,
        )
    return IndexSnapshot(records)


def decode_repodata(content: bytes) -> IndexSnapshot:
    """
    Decodes a {arch}-repodata or {arch}-stagedata blob.
    The blob is a (usually compressed) tar archive holding index.plist.
    """
    if not content:
        raise DecodeError("empty repodata")
    return parse_index(_extract_index(decompress(content)))


def read_repodata(path: Path) -> IndexSnapshot | None:
    """Reads a cached blob from disk, None if there is no such file."""
    try:
        content = Path(path).read_bytes()
    except FileNotFoundError:
        return None
    return decode_repodata(content)
