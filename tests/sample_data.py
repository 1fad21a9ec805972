# -*- coding: utf-8 -*-
"""
Shared builders for the test suite: a small collection with nested decks,
basic and cloze notes, review history and media, plus a hand-written legacy
database for exercising the reader against foreign files.
"""

import io
import json
import os
import sqlite3
import sys
import tempfile
import zipfile
from types import SimpleNamespace

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from ankipkg.collection import Collection
from ankipkg.models import (
    Card,
    MediaFile,
    Note,
    ReviewLogEntry,
    Scheduling,
    determine_card_kind,
)
from ankipkg.schema import LEGACY_SCHEMA

SEED = 1_000_000
FIXED_MOD = 1_700_000_000

CLOZE_TEXT = "The {{c1::mitochondria}} is the {{c2::powerhouse}} of the cell."
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24
MP3_BYTES = b"ID3\x03\x00\x00\x00" + b"\x11" * 40

REVLOG_IDS = (1_600_000_000_000, 1_600_000_000_500)


def add_note(col, model, fields, deck_id, ords=(0,), tags=(), scheduling=None):
    note = Note(id=col.new_id(col.notes), mid=model.id, fields=list(fields),
                tags=list(tags), guid=f"guid{len(col.notes)}", mod=FIXED_MOD)
    col.notes[note.id] = note
    cards = []
    for ord in ords:
        card = Card(
            id=col.new_id(col.cards), nid=note.id, did=deck_id, ord=ord,
            kind=determine_card_kind(model),
            scheduling=Scheduling(**vars(scheduling)) if scheduling else Scheduling(due=len(col.cards) + 1),
            mod=FIXED_MOD,
        )
        col.cards[card.id] = card
        cards.append(card)
    return note, cards


def sample_collection():
    """
    Default, Parent, Parent::Child and Other decks holding:

    - a reviewed Basic card "What is 2+2?" / "4" in Parent::Child
    - a two-card cloze note in Parent
    - a Basic card referencing a.png and b.mp3 in Other
    """
    col = Collection.empty()
    basic = next(m for m in col.models.values() if m.name == "Basic")
    cloze = next(m for m in col.models.values() if m.name == "Cloze")

    parent = col.create_deck("Parent")
    child = col.create_deck("Child", parent.id)
    other = col.create_deck("Other")

    reviewed = Scheduling(type=2, queue=2, due=120, ivl=30, factor=2650, reps=15, lapses=1)
    q_note, (q_card,) = add_note(col, basic, ["What is 2+2?", "4"], child.id,
                                 tags=["math"], scheduling=reviewed)
    col.revlog[q_card.id] = [
        ReviewLogEntry(id=REVLOG_IDS[0], cid=q_card.id, ease=3, ivl=12, last_ivl=4,
                       factor=2500, time=6000, type=1),
        ReviewLogEntry(id=REVLOG_IDS[1], cid=q_card.id, ease=3, ivl=30, last_ivl=12,
                       factor=2650, time=4000, type=1),
    ]

    cloze_note, cloze_cards = add_note(col, cloze, [CLOZE_TEXT, "Biology"], parent.id,
                                       ords=(0, 1), tags=["bio"])
    media_note, (media_card,) = add_note(col, basic, ['<img src="a.png">', "Listen [sound:b.mp3]"],
                                         other.id)
    col.media = {
        "a.png": MediaFile("a.png", PNG_BYTES),
        "b.mp3": MediaFile("b.mp3", MP3_BYTES),
    }

    return SimpleNamespace(
        col=col, basic=basic, cloze=cloze,
        parent=parent, child=child, other=other,
        q_note=q_note, q_card=q_card,
        cloze_note=cloze_note, cloze_cards=cloze_cards,
        media_note=media_note, media_card=media_card,
    )


def assert_same_collection(test, expected, actual, media=True):
    """Compare every modeled entity of two collections."""
    test.assertEqual(expected.decks, actual.decks)
    test.assertEqual(expected.models, actual.models)
    test.assertEqual(expected.notes, actual.notes)
    test.assertEqual(expected.cards, actual.cards)
    test.assertEqual(expected.revlog, actual.revlog)
    if media:
        test.assertEqual(expected.media, actual.media)
    test.assertEqual(expected.meta, actual.meta)

    def key(g):
        return (g.oid, g.type)
    test.assertEqual(sorted(expected.graves, key=key), sorted(actual.graves, key=key))


# Hand-written legacy files

FOREIGN_MODEL = {
    "id": 111,
    "name": "Vocab",
    "type": 0,
    "sortf": 0,
    "css": ".card {}",
    "flds": [{"name": "Word", "ord": 0}, {"name": "Meaning", "ord": 1}],
    "tmpls": [{"name": "Recognition", "ord": 0, "qfmt": "{{Word}}",
               "afmt": "{{FrontSide}}<hr id=answer>{{Meaning}}"}],
    "addonKey": "kept",
}

FOREIGN_DECKS = {
    "1": {"id": 1, "name": "Default", "conf": 1},
    "5": {"id": 5, "name": "Languages::French", "conf": 1, "desc": "Vocabulary"},
}


def legacy_connection(path=":memory:", models=None, decks=None):
    """A legacy-layout database with one col row, opened with plain sqlite3."""
    conn = sqlite3.connect(path)
    conn.executescript(LEGACY_SCHEMA)
    models = {str(FOREIGN_MODEL["id"]): FOREIGN_MODEL} if models is None else models
    decks = FOREIGN_DECKS if decks is None else decks
    conn.execute(
        "INSERT INTO col VALUES (1, 1600000000, 1600000000000, 1600000000000, 11, 0, 0, 0, "
        "?, ?, ?, ?, ?)",
        (json.dumps({"nextPos": 1}), json.dumps(models), json.dumps(decks), json.dumps({}), "{}"),
    )
    return conn


def insert_note(conn, nid, mid, flds, tags=""):
    conn.execute("INSERT INTO notes VALUES (?, ?, ?, 0, 0, ?, ?, '', 0, 0, '')",
                 (nid, f"g{nid}", mid, tags, flds))


def insert_card(conn, cid, nid, did, ord=0):
    conn.execute("INSERT INTO cards VALUES (?, ?, ?, ?, 0, 0, 0, 0, ?, 0, 0, 0, 0, 0, 0, 0, 0, '')",
                 (cid, nid, did, ord, cid))


def foreign_package():
    """An .apkg without a meta entry, as written by old Anki versions."""
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "collection.anki2")
        conn = legacy_connection(path)
        insert_note(conn, 10, 111, "bonjour\x1f<b>hello</b>", " french ")
        insert_card(conn, 20, 10, 5)
        conn.commit()
        conn.close()
        with open(path, "rb") as f:
            database = f.read()

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("collection.anki2", database)
        zf.writestr("media", json.dumps({"0": "pic.jpg"}))
        zf.writestr("0", b"\xff\xd8\xff\xe0jpeg")
    return buffer.getvalue()
