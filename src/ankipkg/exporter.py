# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Export Assembler

Turns a Collection (plus the session's exclusions and edits) into package
bytes. The collection itself is never modified: a filtered snapshot sharing
the unchanged entities is built and handed to the schema adapter.
"""

import copy
import logging
from typing import Dict, Iterable, List, Optional

from . import config, container, manifest
from .collection import Collection
from .consts import (
    DEFAULT_DECK_ID,
    REM_CARD,
    REM_NOTE,
    SCHEMA_LEGACY,
    SCHEMA_MODERN,
)
from .container import PackageVersion
from .models import Grave
from .render import media_references
from .schema import write_collection
from .utils import int_time

logger = logging.getLogger("ankipkg.exporter")


def generation_for(version: PackageVersion) -> int:
    return SCHEMA_MODERN if version == PackageVersion.LATEST else SCHEMA_LEGACY


def _referenced_media(snapshot: Collection, source: Collection) -> Dict[str, object]:
    names = set()
    for note in snapshot.notes.values():
        for value in note.fields:
            names.update(media_references(value))
    # Files with a leading underscore are shared by templates, as in Anki
    return {
        name: media_file for name, media_file in source.media.items()
        if name in names or name.startswith("_")
    }


def build_snapshot(collection: Collection, excluded_card_ids: Optional[Iterable[int]] = None,
                   deck_ids: Optional[Iterable[int]] = None,
                   field_overrides: Optional[Dict[int, List[str]]] = None) -> Collection:
    """
    Select what an export contains.

    Args:
        collection: the source collection, left untouched
        excluded_card_ids: cards to drop; cards flagged as deleted are always dropped
        deck_ids: when given, only cards of these decks are exported; their
            ancestors and the Default deck are kept so names still resolve
        field_overrides: note id -> edited field values

    Returns:
        A Collection holding the rows to emit, with tombstones for the
        dropped cards and for notes left without cards.
    """
    excluded = set(excluded_card_ids or ())
    excluded.update(c.id for c in collection.cards.values() if c.is_deleted)
    overrides = field_overrides or {}
    now = int_time()

    snap = Collection()
    snap.meta = copy.deepcopy(collection.meta)
    snap.meta.mod = int_time(1000)
    snap.passthrough = collection.passthrough
    snap.source_version = collection.source_version
    snap.schema_version = collection.schema_version
    snap.models = dict(collection.models)
    snap.graves = list(collection.graves)

    if deck_ids is None:
        scope = set(collection.decks)
        snap.decks = dict(collection.decks)
    else:
        scope = {d for d in deck_ids if d in collection.decks}
        keep = set(scope) | {DEFAULT_DECK_ID}
        for deck_id in scope:
            keep.update(collection.ancestors(deck_id))
        snap.decks = {i: d for i, d in collection.decks.items() if i in keep}

    in_scope = [c for c in collection.cards.values() if c.did in scope]
    kept_note_ids = set()
    dropped_note_ids = set()
    for card in in_scope:
        if card.id in excluded:
            snap.graves.append(Grave(card.id, REM_CARD))
            dropped_note_ids.add(card.nid)
            continue
        snap.cards[card.id] = card
        kept_note_ids.add(card.nid)
        if card.id in collection.revlog:
            snap.revlog[card.id] = collection.revlog[card.id]

    if deck_ids is None:
        # Notes without any card are kept as they are
        with_cards = {c.nid for c in collection.cards.values()}
        kept_note_ids.update(nid for nid in collection.notes if nid not in with_cards)

    for nid in dropped_note_ids - kept_note_ids:
        snap.graves.append(Grave(nid, REM_NOTE))

    for nid in kept_note_ids:
        note = collection.notes.get(nid)
        if note is None:
            continue
        if nid in overrides and overrides[nid] != note.fields:
            note = copy.copy(note)
            note.fields = list(overrides[nid])
            note.mod = now
            note.usn = -1
        snap.notes[nid] = note

    if deck_ids is None:
        snap.media = dict(collection.media)
    else:
        snap.media = _referenced_media(snap, collection)

    logger.debug(f"Export snapshot: {snap.summary()}, {len(excluded)} excluded card(s)")
    return snap


def resolve_options(collection: Collection, version: Optional[PackageVersion] = None,
                    level: Optional[int] = None, include_hashes: Optional[bool] = None,
                    conf=None):
    """
    Fill in unset export options.

    When ``version`` is not given, the version the collection was read from
    is reused, falling back to the configured ``package_version``.

    Returns:
        (version, level, include_hashes)
    """
    if conf is None:
        conf = config.load_from_env(dict(config.DEFAULTS))
    if version is None:
        version = collection.source_version or PackageVersion(config.get_package_version(conf))
    version = PackageVersion(version)
    if version == PackageVersion.UNKNOWN:
        raise ValueError("Cannot export a package of unknown version")
    if level is None:
        level = config.get_int(conf, "zstd_level", container.DEFAULT_ZSTD_LEVEL)
    if include_hashes is None:
        include_hashes = config.get_bool(conf, "include_media_hashes")
    return version, level, include_hashes


def encode_snapshot(snap: Collection, version: PackageVersion,
                    level: int = container.DEFAULT_ZSTD_LEVEL,
                    include_hashes: bool = True) -> bytes:
    """Emit the database, manifest and media of a snapshot as a package."""
    database = write_collection(snap, generation_for(version))

    entries = manifest.entries_from_media(snap.media, include_hash=include_hashes)
    manifest_bytes = manifest.codec_for_version(version).encode(entries)
    payloads = {str(e.index): snap.media[e.filename].data for e in entries}

    data = container.write_package(
        container.pack(version, database, manifest_bytes, payloads, level)
    )
    logger.info(f"Exported {version.name} package: {len(snap.notes)} notes, "
                f"{len(snap.cards)} cards, {len(payloads)} media, {len(data)} bytes")
    return data


def assemble(collection: Collection, excluded_card_ids: Optional[Iterable[int]] = None,
             version: Optional[PackageVersion] = None, deck_ids: Optional[Iterable[int]] = None,
             field_overrides: Optional[Dict[int, List[str]]] = None,
             level: Optional[int] = None, include_hashes: Optional[bool] = None,
             conf=None) -> bytes:
    """
    Export ``collection`` as package bytes.

    Ids are written as they are, never renumbered. See build_snapshot for
    what is included and resolve_options for the defaults.
    """
    version, level, include_hashes = resolve_options(collection, version, level,
                                                     include_hashes, conf)
    snap = build_snapshot(collection, excluded_card_ids, deck_ids, field_overrides)
    return encode_snapshot(snap, version, level, include_hashes)
