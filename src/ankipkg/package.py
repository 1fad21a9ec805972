# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Read and write whole packages.

``parse_archive`` and ``export_collection`` are coroutines: container
decoding, decompression and database/zip encoding run in worker threads,
one step after another. Either call completes fully or raises; there is no
partial result.
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional

from . import container, exporter, manifest, schema
from .collection import Collection
from .container import PackageEntries
from .exceptions import ContainerError
from .models import MediaFile
from .render import RenderedCard, render_card
from .tracker import MutationTracker

logger = logging.getLogger("ankipkg.package")


def _database_bytes(entries: PackageEntries) -> bytes:
    if entries.version.zstd_compressed:
        return container.decompress(entries.database)
    return entries.database


def _read_media(entries: PackageEntries) -> Dict[str, MediaFile]:
    # Only the latest version compresses manifest and media payloads
    if entries.version.zstd_compressed:
        unpack = container.maybe_decompress
    else:
        unpack = bytes
    codec = manifest.codec_for_version(entries.version)
    media_entries = codec.decode(unpack(entries.manifest))

    media = {}
    for entry in media_entries:
        blob = entries.media.get(str(entry.index))
        if blob is None:
            raise ContainerError(f"Media entry {entry.index} ({entry.filename}) is missing")
        data = unpack(blob)
        if entry.size and entry.size != len(data):
            logger.warning(f"Media file {entry.filename} is {len(data)} bytes, "
                           f"manifest says {entry.size}")
        media[entry.filename] = MediaFile(filename=entry.filename, data=data)
    return media


def _finish(collection: Collection, entries: PackageEntries, media: Dict[str, MediaFile]) -> Collection:
    collection.source_version = entries.version
    collection.media = media
    logger.info(f"Loaded {entries.version.name} package: {collection.summary()}")
    return collection


def read_package(data: bytes) -> Collection:
    """Parse package bytes into a Collection."""
    entries = container.open_package(data)
    collection = schema.read_collection(_database_bytes(entries))
    return _finish(collection, entries, _read_media(entries))


def write_package(collection: Collection, excluded_card_ids: Optional[Iterable[int]] = None,
                  **options) -> bytes:
    """Export a Collection as package bytes. See exporter.assemble for the options."""
    return exporter.assemble(collection, excluded_card_ids, **options)


async def parse_archive(data: bytes) -> Collection:
    """
    Parse package bytes into a Collection.

    Raises:
        PackageError: any malformed input; nothing is returned in that case
    """
    entries = await asyncio.to_thread(container.open_package, data)
    database = await asyncio.to_thread(_database_bytes, entries)
    media = await asyncio.to_thread(_read_media, entries)
    collection = await asyncio.to_thread(schema.read_collection, database)
    return _finish(collection, entries, media)


async def export_collection(collection: Collection, excluded_card_ids: Optional[Iterable[int]] = None,
                            version=None, deck_ids=None, field_overrides=None,
                            level=None, include_hashes=None, conf=None) -> bytes:
    """
    Export a Collection as package bytes.

    The snapshot of what to export is taken before the first suspension
    point, so later mutations of ``collection`` do not leak into the result.
    """
    version, level, include_hashes = exporter.resolve_options(
        collection, version, level, include_hashes, conf)
    snap = exporter.build_snapshot(collection, excluded_card_ids, deck_ids, field_overrides)
    return await asyncio.to_thread(exporter.encode_snapshot, snap, version, level, include_hashes)


class Workspace:
    """
    Holds the single active collection and its mutation tracker.

    Loading a package replaces the previous collection only once the new one
    has been parsed completely.
    """

    def __init__(self):
        self.collection: Optional[Collection] = None
        self.tracker: Optional[MutationTracker] = None
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self.collection is not None

    def _require(self) -> Collection:
        if self.collection is None:
            raise RuntimeError("No collection loaded")
        return self.collection

    async def load(self, data: bytes) -> Collection:
        async with self._lock:
            collection = await parse_archive(data)
            self.collection = collection
            self.tracker = MutationTracker(collection)
            return collection

    def unload(self):
        self.collection = None
        self.tracker = None

    async def export(self, **options) -> bytes:
        """Export the active collection with the tracker's edits and exclusions applied."""
        async with self._lock:
            collection = self._require()
            return await export_collection(
                collection,
                self.tracker.excluded_card_ids(),
                field_overrides=self.tracker.edited_notes(),
                **options,
            )

    def render(self, card_id: int) -> RenderedCard:
        collection = self._require()
        card = collection.get_card(card_id)
        if card is None:
            raise KeyError(f"Card {card_id} not found")
        return render_card(collection, card, self.tracker.effective_fields(card.nid))

    async def iter_cards(self, cancel_event: Optional[asyncio.Event] = None):
        """
        Yield the cards of the active collection, skipping deleted ones.

        Stops early, between two cards, once ``cancel_event`` is set.
        """
        collection = self._require()
        for card in list(collection.cards.values()):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Card iteration cancelled")
                return
            if card.is_deleted:
                continue
            yield card
            await asyncio.sleep(0)
