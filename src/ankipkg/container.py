# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Binary container codec for .apkg files.

A package is a zip file holding:

- ``meta``: PackageMetadata protobuf declaring the package version
- one database entry (``collection.anki2``, ``collection.anki21`` or the
  zstd-compressed ``collection.anki21b``)
- ``media``: the media manifest (JSON or protobuf, see manifest.py)
- ``0``, ``1``, ...: media payloads addressed by the manifest

For LATEST packages Anki also zstd-compresses the manifest and every media
payload, so readers decompress those only when the zstd magic is present.
"""

import enum
import functools
import io
import logging
import zipfile
from dataclasses import dataclass, field
from typing import Dict, Optional

import zstandard as zstd

from . import protos
from .consts import (
    LATEST_DB,
    LEGACY_1_DB,
    LEGACY_2_DB,
    MEDIA_ENTRY,
    META_ENTRY,
    ZSTD_MAGIC,
)
from .exceptions import ContainerError, DecompressionError, EncodingError

logger = logging.getLogger("ankipkg.container")

DEFAULT_ZSTD_LEVEL = 3


class PackageVersion(enum.IntEnum):
    """Mirror of PackageMetadata.Version in Anki's import_export.proto."""
    UNKNOWN = 0
    LEGACY_1 = 1
    LEGACY_2 = 2
    LATEST = 3

    @property
    def database_name(self) -> str:
        if self == PackageVersion.LATEST:
            return LATEST_DB
        if self == PackageVersion.LEGACY_2:
            return LEGACY_2_DB
        return LEGACY_1_DB

    @property
    def is_legacy(self) -> bool:
        return self != PackageVersion.LATEST

    @property
    def zstd_compressed(self) -> bool:
        return self == PackageVersion.LATEST


@dataclass
class PackageEntries:
    """Named entries of a package, as stored in the zip (possibly compressed)."""
    version: PackageVersion
    database: bytes
    manifest: bytes
    media: Dict[str, bytes] = field(default_factory=dict)
    has_meta: bool = True

    @property
    def database_name(self) -> str:
        return self.version.database_name


# Compression
##########################################################################


@functools.lru_cache(maxsize=None)
def _compressor(level: int):
    return zstd.ZstdCompressor(level=level)


@functools.lru_cache(maxsize=None)
def _decompressor():
    return zstd.ZstdDecompressor()


def is_compressed(blob: bytes) -> bool:
    return blob[:4] == ZSTD_MAGIC


def compress(raw: bytes, level: int = DEFAULT_ZSTD_LEVEL) -> bytes:
    return _compressor(level).compress(raw)


def decompress(blob: bytes) -> bytes:
    """
    Decompress a single zstd frame.

    Frames written by Anki's streaming encoder do not carry the content size,
    so a failed one-shot decompress falls back to a decompression object.
    The frame must then end within the blob.

    Raises:
        DecompressionError: the blob is not a valid, complete zstd frame
    """
    if not is_compressed(blob):
        raise DecompressionError("Data is not a zstd frame (bad magic number)")

    dctx = _decompressor()
    try:
        return dctx.decompress(blob)
    except zstd.ZstdError as e:
        logger.debug(f"One-shot zstd decompression failed ({e}), retrying as stream")

    dobj = dctx.decompressobj()
    try:
        data = dobj.decompress(blob)
    except zstd.ZstdError as e:
        raise DecompressionError(f"Corrupt zstd stream: {e}") from e
    if not dobj.eof:
        raise DecompressionError(f"Truncated zstd stream ({len(blob)} bytes, frame not finished)")
    return data


def maybe_decompress(blob: bytes) -> bytes:
    """Decompress ``blob`` if it starts with the zstd magic, else return it as is."""
    if is_compressed(blob):
        return decompress(blob)
    return blob


# Metadata
##########################################################################


def encode_metadata(version: PackageVersion) -> bytes:
    meta = protos.package_metadata()()
    meta.version = int(version)
    return protos.encode(meta, "package metadata")


def decode_metadata(data: bytes) -> PackageVersion:
    meta = protos.decode(protos.package_metadata(), data, "package metadata")
    try:
        return PackageVersion(meta.version)
    except ValueError as e:
        raise EncodingError(f"Unknown package version {meta.version}") from e


# Reading / writing
##########################################################################


def _detect_version(names, meta_version: Optional[PackageVersion]) -> PackageVersion:
    if meta_version == PackageVersion.LATEST:
        if LATEST_DB not in names:
            raise ContainerError(f"Package declares the latest version but has no {LATEST_DB}")
        return PackageVersion.LATEST
    if meta_version in (PackageVersion.LEGACY_1, PackageVersion.LEGACY_2) \
            and meta_version.database_name in names:
        return meta_version

    # Undeclared: Anki reads collection.anki21 in preference to anki2
    if LEGACY_2_DB in names:
        return PackageVersion.LEGACY_2
    if LEGACY_1_DB in names:
        return PackageVersion.LEGACY_1
    if LATEST_DB in names:
        raise ContainerError(f"{LATEST_DB} found but the mandatory {META_ENTRY} entry is missing")
    raise ContainerError("Invalid package: missing collection database")


def open_package(data: bytes) -> PackageEntries:
    """
    Read the named entries of a package.

    Args:
        data: The raw .apkg bytes.

    Returns:
        PackageEntries with payloads as stored in the archive.

    Raises:
        ContainerError: not a zip file, or a mandatory entry is missing
        EncodingError: the meta entry is not a valid PackageMetadata message
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data), "r")
    except (zipfile.BadZipFile, ValueError) as e:
        raise ContainerError(f"Invalid package: {e}") from e

    with zf:
        names = set(zf.namelist())
        try:
            meta_version = None
            if META_ENTRY in names:
                meta_version = decode_metadata(zf.read(META_ENTRY))
                logger.debug(f"Package meta declares version {meta_version.name}")

            version = _detect_version(names, meta_version)

            if MEDIA_ENTRY not in names:
                raise ContainerError(f"Invalid package: missing {MEDIA_ENTRY} manifest")

            database = zf.read(version.database_name)
            manifest = zf.read(MEDIA_ENTRY)
            media = {name: zf.read(name) for name in names if name.isdigit()}
        except (zipfile.BadZipFile, zipfile.LargeZipFile, KeyError, OSError) as e:
            raise ContainerError(f"Corrupt package entry: {e}") from e

    logger.info(
        f"Opened package: version={version.name}, db={version.database_name}, "
        f"media entries={len(media)}"
    )
    return PackageEntries(
        version=version,
        database=database,
        manifest=manifest,
        media=media,
        has_meta=meta_version is not None,
    )


def pack(version: PackageVersion, database: bytes, manifest: bytes,
         media: Dict[str, bytes], level: int = DEFAULT_ZSTD_LEVEL) -> PackageEntries:
    """Build the stored form of a package, compressing where the version requires it."""
    if version.zstd_compressed:
        database = compress(database, level)
        manifest = compress(manifest, level)
        media = {name: compress(blob, level) for name, blob in media.items()}
    return PackageEntries(version=version, database=database, manifest=manifest, media=media)


def write_package(entries: PackageEntries) -> bytes:
    """Write entries to a new zip archive and return its bytes."""
    # Compressed payloads gain nothing from deflate
    compression = zipfile.ZIP_STORED if entries.version.zstd_compressed else zipfile.ZIP_DEFLATED

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression) as zf:
        zf.writestr(META_ENTRY, encode_metadata(entries.version))
        zf.writestr(entries.database_name, entries.database)
        zf.writestr(MEDIA_ENTRY, entries.manifest)
        for name in sorted(entries.media, key=int):
            zf.writestr(name, entries.media[name])

    logger.debug(f"Wrote package {entries.version.name} with {len(entries.media)} media entries")
    return buffer.getvalue()
