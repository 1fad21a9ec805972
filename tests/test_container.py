#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tests for the .apkg container codec: zip entries, package versions and
zstd compression.
"""

import io
import json
import os
import sys
import unittest
import zipfile

import zstandard as zstd

# Add the src directory to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from ankipkg import container
from ankipkg.consts import ZSTD_MAGIC
from ankipkg.container import PackageVersion
from ankipkg.exceptions import ContainerError, DecompressionError, EncodingError


def make_zip(entries):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buffer.getvalue()


class TestCompression(unittest.TestCase):
    """zstd helpers."""

    def test_compress_adds_magic(self):
        """Compressed output starts with the zstd frame magic."""
        blob = container.compress(b"hello world" * 10)
        self.assertEqual(blob[:4], ZSTD_MAGIC)
        self.assertTrue(container.is_compressed(blob))

    def test_decompress_frame_without_content_size(self):
        """Streamed frames carry no content size and still decode."""
        raw = b"streamed payload " * 100
        blob = zstd.ZstdCompressor(write_content_size=False).compress(raw)
        self.assertEqual(container.decompress(blob), raw)

    def test_decompress_rejects_missing_magic(self):
        """Data without the magic number is refused."""
        with self.assertRaises(DecompressionError):
            container.decompress(b"plain bytes")

    def test_decompress_rejects_corrupt_frame(self):
        """A frame with a valid magic but garbage body fails cleanly."""
        with self.assertRaises(DecompressionError):
            container.decompress(ZSTD_MAGIC + b"\x00\x01garbage-garbage")

    def test_decompress_rejects_truncated_frame(self):
        """A frame cut short is an error, not a shorter payload."""
        raw = os.urandom(200_000)
        for compressor in (zstd.ZstdCompressor(), zstd.ZstdCompressor(write_content_size=False)):
            blob = compressor.compress(raw)
            with self.assertRaises(DecompressionError):
                container.decompress(blob[:len(blob) // 2])
            with self.assertRaises(DecompressionError):
                container.maybe_decompress(blob[:-1])

    def test_maybe_decompress_passes_through_raw(self):
        """Uncompressed data is returned untouched."""
        self.assertEqual(container.maybe_decompress(b"{}"), b"{}")
        self.assertEqual(container.maybe_decompress(container.compress(b"{}")), b"{}")


class TestMetadata(unittest.TestCase):
    """The meta entry."""

    def test_each_version_survives_encoding(self):
        """Every known version is read back as itself."""
        for version in (PackageVersion.LEGACY_1, PackageVersion.LEGACY_2, PackageVersion.LATEST):
            self.assertEqual(container.decode_metadata(container.encode_metadata(version)), version)

    def test_truncated_metadata(self):
        """Unparseable metadata raises EncodingError."""
        with self.assertRaises(EncodingError):
            container.decode_metadata(b"\xff\xff\xff")


class TestOpenPackage(unittest.TestCase):
    """Reading the entries of an archive."""

    def test_not_a_zip(self):
        """Arbitrary bytes are not a container."""
        with self.assertRaises(ContainerError):
            container.open_package(b"this is not a zip file")

    def test_missing_database(self):
        """A zip without any collection database is rejected."""
        data = make_zip({"media": "{}"})
        with self.assertRaises(ContainerError):
            container.open_package(data)

    def test_missing_media_manifest(self):
        """The media manifest is mandatory."""
        data = make_zip({"collection.anki2": b"db"})
        with self.assertRaises(ContainerError):
            container.open_package(data)

    def test_latest_without_meta_is_rejected(self):
        """collection.anki21b cannot be read without its meta entry."""
        data = make_zip({"collection.anki21b": b"db", "media": b""})
        with self.assertRaises(ContainerError):
            container.open_package(data)

    def test_meta_declares_latest_but_database_missing(self):
        """A LATEST meta entry requires collection.anki21b."""
        data = make_zip({
            "meta": container.encode_metadata(PackageVersion.LATEST),
            "collection.anki2": b"db",
            "media": b"",
        })
        with self.assertRaises(ContainerError):
            container.open_package(data)

    def test_legacy_version_detected_without_meta(self):
        """Old packages have no meta entry; anki21 wins over anki2."""
        data = make_zip({
            "collection.anki2": b"old",
            "collection.anki21": b"new",
            "media": json.dumps({"0": "a.png"}),
            "0": b"png",
        })
        entries = container.open_package(data)
        self.assertEqual(entries.version, PackageVersion.LEGACY_2)
        self.assertFalse(entries.has_meta)
        self.assertEqual(entries.database, b"new")
        self.assertEqual(entries.media, {"0": b"png"})

    def test_meta_selects_legacy_1(self):
        """A declared LEGACY_1 reads collection.anki2 even if anki21 is present."""
        data = make_zip({
            "meta": container.encode_metadata(PackageVersion.LEGACY_1),
            "collection.anki2": b"old",
            "collection.anki21": b"new",
            "media": "{}",
        })
        entries = container.open_package(data)
        self.assertEqual(entries.version, PackageVersion.LEGACY_1)
        self.assertEqual(entries.database, b"old")


class TestWritePackage(unittest.TestCase):
    """Packing and writing archives."""

    def test_latest_compresses_everything(self):
        """LATEST packages compress the database, manifest and media."""
        entries = container.pack(PackageVersion.LATEST, b"database", b"manifest", {"0": b"media"})
        self.assertTrue(container.is_compressed(entries.database))
        self.assertTrue(container.is_compressed(entries.manifest))
        self.assertTrue(container.is_compressed(entries.media["0"]))

        opened = container.open_package(container.write_package(entries))
        self.assertEqual(opened.version, PackageVersion.LATEST)
        self.assertTrue(opened.has_meta)
        self.assertEqual(container.decompress(opened.database), b"database")
        self.assertEqual(container.decompress(opened.media["0"]), b"media")

    def test_legacy_stores_raw(self):
        """Legacy packages keep payloads uncompressed under the right name."""
        entries = container.pack(PackageVersion.LEGACY_2, b"database", b"{}", {})
        data = container.write_package(entries)
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            self.assertEqual(set(zf.namelist()), {"meta", "collection.anki21", "media"})
            self.assertEqual(zf.read("collection.anki21"), b"database")


if __name__ == '__main__':
    unittest.main()
