#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tests for whole-package reading and writing: round trips across versions,
subtree exports, exclusions and tombstones.
"""

import os
import sys
import unittest

# Add the src directory to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from ankipkg import container, exporter
from ankipkg.consts import DEFAULT_DECK_ID, REM_CARD, REM_NOTE
from ankipkg.container import PackageVersion
from ankipkg.exceptions import ContainerError, DecompressionError
from ankipkg.ids import reset_ids
from ankipkg.package import read_package, write_package
from sample_data import SEED, assert_same_collection, foreign_package, sample_collection

ALL_VERSIONS = (PackageVersion.LEGACY_1, PackageVersion.LEGACY_2, PackageVersion.LATEST)


def graves_of(col):
    return {(g.oid, g.type) for g in col.graves}


class TestRoundTrip(unittest.TestCase):
    """Export followed by import."""

    def setUp(self):
        """Build the sample collection with reproducible ids."""
        reset_ids(SEED)
        self.s = sample_collection()
        self.col = self.s.col

    def test_every_version_reads_back_equal(self):
        """Decks, notes, cards, history and media survive each version."""
        for version in ALL_VERSIONS:
            read = read_package(write_package(self.col, version=version))
            self.assertEqual(read.source_version, version)
            assert_same_collection(self, self.col, read)

    def test_repeated_round_trips_are_stable(self):
        """Three consecutive round trips change nothing and keep every id."""
        current = self.col
        for _ in range(3):
            current = read_package(write_package(current, version=PackageVersion.LATEST))
        assert_same_collection(self, self.col, current)
        self.assertEqual(set(current.cards), set(self.col.cards))
        self.assertEqual(set(current.decks), set(self.col.decks))

    def test_basic_card_survives(self):
        """The Basic card keeps its fields, deck and scheduling."""
        read = read_package(write_package(self.col, version=PackageVersion.LATEST))
        card = read.get_card(self.s.q_card.id)
        self.assertEqual(read.get_note(card.nid).fields, ["What is 2+2?", "4"])
        self.assertEqual(read.get_deck(card.did).name, "Parent::Child")
        self.assertEqual((card.scheduling.ivl, card.scheduling.factor, card.scheduling.reps),
                         (30, 2650, 15))

    def test_version_defaults_to_source(self):
        """Without an explicit version the source version is reused."""
        legacy = read_package(write_package(self.col, version=PackageVersion.LEGACY_2))
        again = read_package(write_package(legacy))
        self.assertEqual(again.source_version, PackageVersion.LEGACY_2)

    def test_latest_payloads_are_compressed(self):
        """LATEST packages store zstd-compressed database, manifest and media."""
        entries = container.open_package(write_package(self.col, version=PackageVersion.LATEST))
        self.assertTrue(container.is_compressed(entries.database))
        self.assertTrue(container.is_compressed(entries.manifest))
        self.assertEqual(len(entries.media), 2)
        self.assertTrue(all(container.is_compressed(b) for b in entries.media.values()))

    def test_foreign_package_without_meta(self):
        """Old packages without meta or parent decks still load."""
        col = read_package(foreign_package())
        self.assertEqual(col.source_version, PackageVersion.LEGACY_1)
        self.assertEqual(col.media["pic.jpg"].data, b"\xff\xd8\xff\xe0jpeg")
        self.assertEqual(col.get_note(10).fields, ["bonjour", "<b>hello</b>"])
        self.assertIsNotNone(col.get_deck_by_name("Languages"))
        self.assertEqual(col.check_tree(), [])

    def test_truncated_latest_payloads(self):
        """A cut-off database or media payload fails as a decompression error."""
        data = write_package(self.col, version=PackageVersion.LATEST)

        entries = container.open_package(data)
        entries.database = entries.database[:len(entries.database) // 2]
        with self.assertRaises(DecompressionError):
            read_package(container.write_package(entries))

        entries = container.open_package(data)
        entries.media["0"] = entries.media["0"][:-4]
        with self.assertRaises(DecompressionError):
            read_package(container.write_package(entries))

    def test_missing_media_payload(self):
        """A manifest entry without its zip entry is an error."""
        entries = container.open_package(write_package(self.col, version=PackageVersion.LEGACY_2))
        del entries.media["1"]
        with self.assertRaises(ContainerError):
            read_package(container.write_package(entries))


class TestExport(unittest.TestCase):
    """What an export contains."""

    def setUp(self):
        """Build the sample collection with reproducible ids."""
        reset_ids(SEED)
        self.s = sample_collection()
        self.col = self.s.col

    def test_subtree_export(self):
        """Exporting Parent keeps its subtree, ancestors and Default only."""
        deck_ids = self.col.subtree_ids(self.s.parent.id)
        read = read_package(write_package(self.col, deck_ids=deck_ids,
                                          version=PackageVersion.LATEST))

        self.assertEqual(set(read.decks), {DEFAULT_DECK_ID, self.s.parent.id, self.s.child.id})
        self.assertEqual(set(read.cards),
                         {self.s.q_card.id} | {c.id for c in self.s.cloze_cards})
        self.assertNotIn(self.s.media_note.id, read.notes)
        self.assertEqual(read.media, {})
        self.assertIn(self.s.q_card.id, read.revlog)

    def test_child_export_keeps_ancestors(self):
        """A nested deck is exported under its full name."""
        read = read_package(write_package(self.col, deck_ids={self.s.child.id},
                                          version=PackageVersion.LEGACY_2))
        self.assertEqual(read.get_deck(self.s.child.id).name, "Parent::Child")
        self.assertEqual(read.card_count(), 1)

    def test_subtree_export_keeps_referenced_media(self):
        """Only media referenced by exported notes is included."""
        read = read_package(write_package(self.col, deck_ids={self.s.other.id},
                                          version=PackageVersion.LATEST))
        self.assertEqual(set(read.media), {"a.png", "b.mp3"})

    def test_subtree_export_keeps_unquoted_image(self):
        """An image referenced with a bare src attribute is still exported."""
        self.s.media_note.fields[0] = "<img src=a.png>"
        read = read_package(write_package(self.col, deck_ids={self.s.other.id},
                                          version=PackageVersion.LATEST))
        self.assertEqual(set(read.media), {"a.png", "b.mp3"})

    def test_excluded_card_leaves_tombstone(self):
        """An excluded card is dropped and recorded as a grave."""
        first, second = self.s.cloze_cards
        read = read_package(write_package(self.col, excluded_card_ids={first.id}))
        self.assertNotIn(first.id, read.cards)
        self.assertIn(second.id, read.cards)
        self.assertIn((first.id, REM_CARD), graves_of(read))
        self.assertNotIn((self.s.cloze_note.id, REM_NOTE), graves_of(read))

    def test_note_without_cards_is_tombstoned(self):
        """A note whose cards are all excluded goes too."""
        excluded = {c.id for c in self.s.cloze_cards}
        read = read_package(write_package(self.col, excluded_card_ids=excluded))
        self.assertNotIn(self.s.cloze_note.id, read.notes)
        self.assertIn((self.s.cloze_note.id, REM_NOTE), graves_of(read))

    def test_flagged_cards_are_always_excluded(self):
        """Cards flagged as deleted never reach the package."""
        self.s.q_card.is_deleted = True
        read = read_package(write_package(self.col))
        self.assertNotIn(self.s.q_card.id, read.cards)
        self.assertNotIn(self.s.q_card.id, read.revlog)

    def test_export_does_not_mutate(self):
        """The source collection is untouched by an export."""
        before_cards = dict(self.col.cards)
        before_graves = list(self.col.graves)
        snap = exporter.build_snapshot(
            self.col, excluded_card_ids={self.s.q_card.id},
            field_overrides={self.s.cloze_note.id: ["{{c1::changed}}", ""]})

        self.assertEqual(self.col.cards, before_cards)
        self.assertEqual(self.col.graves, before_graves)
        self.assertEqual(self.s.cloze_note.fields[1], "Biology")
        self.assertEqual(snap.notes[self.s.cloze_note.id].fields, ["{{c1::changed}}", ""])
        self.assertEqual(snap.notes[self.s.cloze_note.id].usn, -1)
        self.assertIsNot(snap.notes[self.s.cloze_note.id], self.s.cloze_note)

    def test_resolve_options(self):
        """Unset options come from the source version and the config."""
        conf = {"package_version": "legacy1", "zstd_level": "7", "include_media_hashes": "false"}
        version, level, hashes = exporter.resolve_options(self.col, conf=conf)
        self.assertEqual((version, level, hashes), (PackageVersion.LEGACY_1, 7, False))

        self.col.source_version = PackageVersion.LEGACY_2
        version, _, _ = exporter.resolve_options(self.col, conf=conf)
        self.assertEqual(version, PackageVersion.LEGACY_2)

        with self.assertRaises(ValueError):
            exporter.resolve_options(self.col, version=PackageVersion.UNKNOWN, conf=conf)


if __name__ == '__main__':
    unittest.main()
