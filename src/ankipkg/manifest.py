# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Media manifest serializers.

Anki supports two formats for the ``media`` entry of a package:

1. Legacy JSON: ``{"0": "file1.jpg", "1": "file2.png", ...}``, understood
   by every Anki version.
2. Protobuf ``MediaEntries`` (packages of version LATEST): an ordered list
   of entries carrying name, size and SHA1. The original zip entry name is
   kept in ``legacy_zip_filename``; when absent, the position in the list is
   the zip entry name.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional

from . import protos
from .container import PackageVersion
from .exceptions import EncodingError

if TYPE_CHECKING:
    from .models import MediaFile

logger = logging.getLogger("ankipkg.manifest")

LEGACY = "legacy"
MODERN = "modern"


@dataclass
class MediaEntry:
    index: int
    filename: str
    size: Optional[int] = None
    sha1: Optional[bytes] = None


class LegacyManifestCodec:
    """JSON hashmap of zip entry name to filename."""
    format = LEGACY
    description = "JSON format (compatible with all Anki versions)"

    def encode(self, entries: List[MediaEntry]) -> bytes:
        mapping = {str(entry.index): entry.filename for entry in entries}
        return json.dumps(mapping).encode("utf-8")

    def decode(self, data: bytes) -> List[MediaEntry]:
        if not data or not data.strip():
            return []
        try:
            mapping = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise EncodingError(f"Invalid JSON media manifest: {e}") from e
        if not isinstance(mapping, dict):
            raise EncodingError("JSON media manifest must be an object")

        entries = []
        for key, filename in mapping.items():
            if not str(key).isdigit() or not isinstance(filename, str):
                raise EncodingError(f"Invalid media manifest entry: {key!r} -> {filename!r}")
            entries.append(MediaEntry(index=int(key), filename=filename))
        entries.sort(key=lambda e: e.index)
        return entries


class ProtobufManifestCodec:
    """MediaEntries protobuf message with per-file size and hash."""
    format = MODERN
    description = "Protobuf format (Anki 2.1.50+, includes size and SHA1)"

    def encode(self, entries: List[MediaEntry]) -> bytes:
        message = protos.media_entries()()
        for entry in entries:
            item = message.entries.add()
            item.name = entry.filename
            item.size = entry.size or 0
            item.sha1 = entry.sha1 or b""
            item.legacy_zip_filename = entry.index
        return protos.encode(message, "media manifest")

    def decode(self, data: bytes) -> List[MediaEntry]:
        message = protos.decode(protos.media_entries(), data, "media manifest")
        entries = []
        for position, item in enumerate(message.entries):
            if item.HasField("legacy_zip_filename"):
                index = item.legacy_zip_filename
            else:
                index = position
            entries.append(MediaEntry(
                index=index,
                filename=item.name,
                size=item.size,
                sha1=bytes(item.sha1) or None,
            ))
        return entries


_codecs = {
    LEGACY: LegacyManifestCodec(),
    MODERN: ProtobufManifestCodec(),
}


def get_manifest_codec(format: str):
    try:
        return _codecs[format]
    except KeyError:
        raise ValueError(f"Unknown media manifest format: {format!r}")


def available_codecs():
    return list(_codecs.values())


def codec_for_version(version: PackageVersion):
    """LATEST packages carry the protobuf manifest, older ones the JSON map."""
    return _codecs[MODERN if version == PackageVersion.LATEST else LEGACY]


def entries_from_media(media: Dict[str, "MediaFile"], include_hash: bool = True) -> List[MediaEntry]:
    """
    Number media files in insertion order.

    Args:
        media: filename -> MediaFile map of a collection
        include_hash: whether to record size and SHA1 (protobuf manifest only)
    """
    entries = []
    for index, (filename, media_file) in enumerate(media.items()):
        entry = MediaEntry(index=index, filename=filename)
        if include_hash:
            entry.size = len(media_file.data)
            entry.sha1 = media_file.sha1 or hashlib.sha1(media_file.data).digest()
        entries.append(entry)
    return entries
