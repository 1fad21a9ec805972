# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Collection Schema Adapter

Maps the embedded SQLite database of a package to a Collection and back.
Two generations of the schema are handled:

- V11 (legacy): note types, decks, deck options and tags live as JSON blobs
  in the single ``col`` row.
- V18 (modern): note types, fields, templates, decks, deck options, config
  and tags have their own tables; per-row settings are protobuf blobs.

Anything that is not modeled (extra JSON keys, unknown protobuf fields, the
modern deck_config/config/tags rows) is carried through so that an export
reproduces it.
"""

import json
import logging
import os
import re
import sqlite3
import tempfile
from typing import Any, Dict, List

from . import protos
from .collection import Collection
from .consts import (
    DECK_SEPARATOR,
    DEFAULT_CONF_ID,
    DEFAULT_DECK_ID,
    DEFAULT_DECK_NAME,
    MODERN_DECK_SEPARATOR,
    SCHEMA_LEGACY,
    SCHEMA_MODERN,
    STARTING_FACTOR,
)
from .exceptions import PackageError, ReferentialError, SchemaError
from .models import (
    Card,
    CardTemplate,
    CollectionMeta,
    Deck,
    Grave,
    ModelKind,
    Note,
    NoteField,
    NoteType,
    ReviewLogEntry,
    Scheduling,
    determine_card_kind,
)
from .utils import (
    field_checksum,
    int_time,
    join_fields,
    join_tags,
    split_fields,
    split_tags,
    strip_html_media,
)

logger = logging.getLogger("ankipkg.schema")

# Tables only present in the modern generation
MODERN_ONLY_TABLES = ("notetypes", "fields", "templates", "decks", "deck_config", "config")

REQUIRED_COLUMNS = {
    "col": ("id", "crt", "mod", "scm", "ver", "dty", "usn", "ls"),
    "notes": ("id", "guid", "mid", "mod", "usn", "tags", "flds", "flags", "data"),
    "cards": ("id", "nid", "did", "ord", "mod", "usn", "type", "queue", "due", "ivl",
              "factor", "reps", "lapses", "left", "odue", "odid", "flags", "data"),
    "revlog": ("id", "cid", "usn", "ease", "ivl", "lastIvl", "factor", "time", "type"),
}
LEGACY_COL_COLUMNS = ("conf", "models", "decks", "dconf", "tags")

_COMMON_SCHEMA = """
CREATE TABLE col (
    id integer primary key,
    crt integer not null,
    mod integer not null,
    scm integer not null,
    ver integer not null,
    dty integer not null,
    usn integer not null,
    ls integer not null,
    conf text not null,
    models text not null,
    decks text not null,
    dconf text not null,
    tags text not null
);
CREATE TABLE notes (
    id integer primary key,
    guid text not null,
    mid integer not null,
    mod integer not null,
    usn integer not null,
    tags text not null,
    flds text not null,
    sfld integer not null,
    csum integer not null,
    flags integer not null,
    data text not null
);
CREATE TABLE cards (
    id integer primary key,
    nid integer not null,
    did integer not null,
    ord integer not null,
    mod integer not null,
    usn integer not null,
    type integer not null,
    queue integer not null,
    due integer not null,
    ivl integer not null,
    factor integer not null,
    reps integer not null,
    lapses integer not null,
    left integer not null,
    odue integer not null,
    odid integer not null,
    flags integer not null,
    data text not null
);
CREATE TABLE revlog (
    id integer primary key,
    cid integer not null,
    usn integer not null,
    ease integer not null,
    ivl integer not null,
    lastIvl integer not null,
    factor integer not null,
    time integer not null,
    type integer not null
);
CREATE INDEX ix_notes_usn on notes (usn);
CREATE INDEX ix_cards_usn on cards (usn);
CREATE INDEX ix_revlog_usn on revlog (usn);
CREATE INDEX ix_cards_nid on cards (nid);
CREATE INDEX ix_cards_sched on cards (did, queue, due);
CREATE INDEX ix_revlog_cid on revlog (cid);
CREATE INDEX ix_notes_csum on notes (csum);
"""

LEGACY_SCHEMA = _COMMON_SCHEMA + """
CREATE TABLE graves (
    usn integer not null,
    oid integer not null,
    type integer not null
);
"""

MODERN_SCHEMA = _COMMON_SCHEMA + """
CREATE TABLE deck_config (
    id integer primary key not null,
    name text not null collate unicase,
    mtime_secs integer not null,
    usn integer not null,
    config blob not null
);
CREATE TABLE config (
    KEY text not null primary key,
    usn integer not null,
    mtime_secs integer not null,
    val blob not null
) without rowid;
CREATE TABLE fields (
    ntid integer not null,
    ord integer not null,
    name text not null collate unicase,
    config blob not null,
    primary key (ntid, ord)
) without rowid;
CREATE TABLE templates (
    ntid integer not null,
    ord integer not null,
    name text not null collate unicase,
    mtime_secs integer not null,
    usn integer not null,
    config blob not null,
    primary key (ntid, ord)
) without rowid;
CREATE TABLE notetypes (
    id integer not null primary key,
    name text not null collate unicase,
    mtime_secs integer not null,
    usn integer not null,
    config blob not null
);
CREATE TABLE decks (
    id integer primary key not null,
    name text not null collate unicase,
    mtime_secs integer not null,
    usn integer not null,
    common blob not null,
    kind blob not null
);
CREATE TABLE tags (
    tag text not null primary key collate unicase,
    usn integer not null,
    collapsed boolean not null,
    config blob null
) without rowid;
CREATE TABLE graves (
    oid integer not null,
    type integer not null,
    usn integer not null,
    primary key (oid, type)
) without rowid;
CREATE INDEX idx_notes_mid ON notes (mid);
CREATE INDEX idx_cards_odid ON cards (odid) WHERE odid != 0;
CREATE INDEX idx_fields_name_ntid ON fields (name, ntid);
CREATE INDEX idx_templates_name_ntid ON templates (name, ntid);
CREATE INDEX idx_templates_usn ON templates (usn);
CREATE INDEX idx_notetypes_usn ON notetypes (usn);
CREATE INDEX idx_decks_usn ON decks (usn);
CREATE INDEX idx_deck_config_usn ON deck_config (usn);
CREATE INDEX idx_graves_pending ON graves (usn);
"""

DEFAULT_DCONF = {
    "id": DEFAULT_CONF_ID,
    "name": "Default",
    "new": {"delays": [1, 10], "ints": [1, 4, 0], "initialFactor": STARTING_FACTOR,
            "order": 1, "perDay": 20},
    "rev": {"perDay": 200, "ease4": 1.3, "ivlFct": 1, "maxIvl": 36500, "fuzz": 0.05},
    "lapse": {"delays": [10], "mult": 0, "minInt": 1, "leechFails": 8, "leechAction": 0},
    "maxTaken": 60,
    "timer": 0,
    "autoplay": True,
    "replayq": True,
    "dyn": False,
    "mod": 0,
    "usn": 0,
}

_DECK_DEFAULTS = {
    "collapsed": False,
    "browserCollapsed": False,
    "newToday": [0, 0],
    "revToday": [0, 0],
    "lrnToday": [0, 0],
    "timeToday": [0, 0],
    "extendNew": 0,
    "extendRev": 0,
}

_FILTERED_DECK_DEFAULTS = {
    "terms": [["", 100, 0]],
    "resched": True,
    "delays": None,
    "previewDelay": 10,
}

_field_ref = re.compile(r"\{\{[#^]?(?:[^}:]*:)*([^}]+?)\}\}")

# Keys of legacy JSON objects that are modeled and therefore not passed through
_MODEL_KEYS = {"id", "name", "type", "mod", "usn", "sortf", "css", "latexPre",
               "latexPost", "flds", "tmpls"}
_FIELD_KEYS = {"name", "ord", "sticky"}
_TEMPLATE_KEYS = {"name", "ord", "qfmt", "afmt"}
_DECK_KEYS = {"id", "name", "desc", "dyn", "conf", "mod", "usn"}


def _unicase(x, y):
    return (x.lower() > y.lower()) - (x.lower() < y.lower())


def connect(path: str) -> sqlite3.Connection:
    """Open a collection database with the collation Anki's tables declare."""
    conn = sqlite3.connect(path)
    conn.create_collation("unicase", _unicase)
    return conn


def _table_exists(conn, table_name: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table_name,)
    ).fetchone()
    return row is not None


def _table_columns(conn, table_name: str) -> List[str]:
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table_name})")]


def detect_generation(conn) -> int:
    """
    Return SCHEMA_MODERN or SCHEMA_LEGACY.

    Raises:
        SchemaError: neither generation is recognizable
    """
    present = [t for t in MODERN_ONLY_TABLES if _table_exists(conn, t)]
    if len(present) == len(MODERN_ONLY_TABLES):
        return SCHEMA_MODERN
    if present:
        logger.warning(f"Partial modern schema (only {present}), trying legacy layout")

    if _table_exists(conn, "col"):
        columns = _table_columns(conn, "col")
        if "models" in columns and "decks" in columns:
            row = conn.execute("SELECT models, decks FROM col").fetchone()
            if row and row[0] and row[0] != "{}":
                return SCHEMA_LEGACY
    raise SchemaError("Unrecognized collection schema: neither legacy nor modern tables found")


def _require(conn, generation: int):
    for table, columns in REQUIRED_COLUMNS.items():
        if not _table_exists(conn, table):
            raise SchemaError(f"Required table '{table}' is missing")
        have = set(_table_columns(conn, table))
        if table == "col" and generation == SCHEMA_LEGACY:
            columns = columns + LEGACY_COL_COLUMNS
        missing = [c for c in columns if c not in have]
        if missing:
            raise SchemaError(f"Table '{table}' is missing column(s): {', '.join(missing)}")


def _loads(text, what: str):
    try:
        return json.loads(text) if text else {}
    except (TypeError, ValueError) as e:
        raise SchemaError(f"Invalid JSON in {what}: {e}") from e


def _rest(obj: Dict[str, Any], modeled) -> Dict[str, Any]:
    return {k: v for k, v in obj.items() if k not in modeled}


# Reading
##########################################################################


def read_collection(db_bytes: bytes) -> Collection:
    """Parse the raw bytes of a collection database."""
    fd, path = tempfile.mkstemp(suffix=".anki2", prefix=".ankipkg_")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(db_bytes)
        conn = connect(path)
        try:
            return parse_rows(conn)
        finally:
            conn.close()
    finally:
        os.unlink(path)


def parse_rows(conn) -> Collection:
    """
    Build a Collection from an open database connection.

    Raises:
        SchemaError: unrecognized generation, missing table/column, bad JSON
        ReferentialError: a note or card points at a missing entity
    """
    try:
        generation = detect_generation(conn)
        _require(conn, generation)

        col = Collection()
        col.schema_version = generation
        if generation == SCHEMA_MODERN:
            _read_modern_config(conn, col)
            _read_modern_notetypes(conn, col)
            _read_modern_decks(conn, col)
        else:
            _read_legacy_config(conn, col)

        _link_decks(col)
        _read_notes(conn, col)
        _read_cards(conn, col)
        _read_revlog(conn, col)
        _read_graves(conn, col)
    except sqlite3.Error as e:
        raise SchemaError(f"Could not read collection database: {e}") from e

    col.rebuild_tree()
    logger.info(f"Read schema V{generation} collection: {col.summary()}")
    return col


def _read_meta(row) -> CollectionMeta:
    crt, mod, scm, ver, dty, usn, ls = row[:7]
    return CollectionMeta(crt=crt, mod=mod, scm=scm, ver=ver, dty=dty, usn=usn, ls=ls)


def _read_legacy_config(conn, col: Collection):
    row = conn.execute(
        "SELECT crt, mod, scm, ver, dty, usn, ls, conf, models, decks, dconf, tags FROM col"
    ).fetchone()
    if row is None:
        raise SchemaError("The col table is empty")
    col.meta = _read_meta(row)
    col.meta.conf = _loads(row[7], "col.conf")

    for model in _loads(row[8], "col.models").values():
        nt = _legacy_note_type(model)
        col.models[nt.id] = nt
    for deck in _loads(row[9], "col.decks").values():
        d = Deck(
            id=int(deck["id"]),
            name=deck["name"],
            description=deck.get("desc") or "",
            dyn=bool(deck.get("dyn", 0)),
            conf_id=int(deck.get("conf") or DEFAULT_CONF_ID),
            mod=deck.get("mod", 0),
            usn=deck.get("usn", 0),
            legacy=_rest(deck, _DECK_KEYS),
        )
        col.decks[d.id] = d

    col.passthrough.dconf = _loads(row[10], "col.dconf")
    col.passthrough.tags = _loads(row[11], "col.tags")


def _legacy_note_type(model: Dict[str, Any]) -> NoteType:
    try:
        fields = [
            NoteField(name=f["name"], ord=f["ord"], sticky=bool(f.get("sticky", False)),
                      legacy=_rest(f, _FIELD_KEYS))
            for f in sorted(model["flds"], key=lambda f: f["ord"])
        ]
        templates = [
            CardTemplate(name=t["name"], ord=t["ord"], qfmt=t.get("qfmt", ""),
                         afmt=t.get("afmt", ""), legacy=_rest(t, _TEMPLATE_KEYS))
            for t in sorted(model["tmpls"], key=lambda t: t["ord"])
        ]
        nt = NoteType(
            id=int(model["id"]),
            name=model["name"],
            kind=ModelKind(model.get("type", 0)),
            fields=fields,
            templates=templates,
            css=model.get("css", ""),
            latex_pre=model.get("latexPre", ""),
            latex_post=model.get("latexPost", ""),
            sort_field=model.get("sortf", 0),
            mod=model.get("mod", 0),
            usn=model.get("usn", 0),
            legacy=_rest(model, _MODEL_KEYS),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise SchemaError(f"Malformed note type {model.get('id')}: {e}") from e
    return _normalize_note_type(nt)


def _normalize_note_type(nt: NoteType) -> NoteType:
    for problem in nt.invariant_errors():
        logger.warning(f"Repairing {problem}")
    for index, f in enumerate(nt.fields):
        f.ord = index
    for index, t in enumerate(nt.templates):
        t.ord = index
    if nt.is_cloze and len(nt.templates) > 1:
        del nt.templates[1:]
    return nt


def _read_modern_config(conn, col: Collection):
    row = conn.execute("SELECT crt, mod, scm, ver, dty, usn, ls FROM col").fetchone()
    if row is None:
        raise SchemaError("The col table is empty")
    col.meta = _read_meta(row)

    col.passthrough.config_rows = [
        tuple(r) for r in conn.execute("SELECT KEY, usn, mtime_secs, val FROM config ORDER BY KEY")
    ]
    for key, _usn, _mtime, val in col.passthrough.config_rows:
        try:
            col.meta.conf[key] = json.loads(val)
        except (TypeError, ValueError):
            logger.debug(f"Config key {key!r} is not JSON, kept as opaque row")

    col.passthrough.deck_config_rows = [
        tuple(r) for r in conn.execute(
            "SELECT id, name, mtime_secs, usn, config FROM deck_config ORDER BY id")
    ]
    if _table_exists(conn, "tags"):
        columns = _table_columns(conn, "tags")
        if "collapsed" in columns:
            query = "SELECT tag, usn, collapsed, config FROM tags ORDER BY tag"
        else:
            query = "SELECT tag, usn, 0, NULL FROM tags ORDER BY tag"
        col.passthrough.tag_rows = [tuple(r) for r in conn.execute(query)]


def _read_modern_notetypes(conn, col: Collection):
    fields: Dict[int, List[NoteField]] = {}
    for ntid, ord, name, config in conn.execute(
            "SELECT ntid, ord, name, config FROM fields ORDER BY ntid, ord"):
        msg = protos.decode(protos.field_config(), config, "field config")
        fields.setdefault(ntid, []).append(
            NoteField(name=name, ord=ord, sticky=msg.sticky, modern={"config": bytes(config or b"")})
        )

    templates: Dict[int, List[CardTemplate]] = {}
    for ntid, ord, name, mtime, usn, config in conn.execute(
            "SELECT ntid, ord, name, mtime_secs, usn, config FROM templates ORDER BY ntid, ord"):
        msg = protos.decode(protos.template_config(), config, "template config")
        templates.setdefault(ntid, []).append(CardTemplate(
            name=name, ord=ord, qfmt=msg.q_format, afmt=msg.a_format,
            modern={"config": bytes(config or b""), "mtime_secs": mtime, "usn": usn},
        ))

    for ntid, name, mtime, usn, config in conn.execute(
            "SELECT id, name, mtime_secs, usn, config FROM notetypes"):
        msg = protos.decode(protos.notetype_config(), config, "notetype config")
        try:
            kind = ModelKind(msg.kind)
        except ValueError as e:
            raise SchemaError(f"Note type {ntid} has unknown kind {msg.kind}") from e
        nt = NoteType(
            id=ntid,
            name=name,
            kind=kind,
            fields=fields.get(ntid, []),
            templates=templates.get(ntid, []),
            css=msg.css,
            latex_pre=msg.latex_pre,
            latex_post=msg.latex_post,
            sort_field=msg.sort_field_idx,
            mod=mtime,
            usn=usn,
            modern={"config": bytes(config or b"")},
        )
        col.models[ntid] = _normalize_note_type(nt)


def _read_modern_decks(conn, col: Collection):
    for did, name, mtime, usn, common, kind in conn.execute(
            "SELECT id, name, mtime_secs, usn, common, kind FROM decks"):
        kind_msg = protos.decode(protos.deck_kind(), kind, "deck kind")
        deck = Deck(
            id=did,
            name=name.replace(MODERN_DECK_SEPARATOR, DECK_SEPARATOR),
            mod=mtime,
            usn=usn,
            modern={"common": bytes(common or b""), "kind": bytes(kind or b"")},
        )
        if kind_msg.WhichOneof("kind") == "filtered":
            deck.dyn = True
        else:
            deck.conf_id = kind_msg.normal.config_id or DEFAULT_CONF_ID
            deck.description = kind_msg.normal.description
        col.decks[did] = deck


def _link_decks(col: Collection):
    """Set parent pointers from deck names, creating missing ancestors."""
    if DEFAULT_DECK_ID not in col.decks:
        logger.warning("Collection has no Default deck, adding one")
        col.decks[DEFAULT_DECK_ID] = Deck(id=DEFAULT_DECK_ID, name=DEFAULT_DECK_NAME)

    by_name = {d.name.lower(): d for d in col.decks.values()}
    for deck in sorted(list(col.decks.values()), key=lambda d: d.depth):
        if DECK_SEPARATOR not in deck.name:
            deck.parent_id = None
            continue
        parent_name, short = deck.name.rsplit(DECK_SEPARATOR, 1)
        parent = by_name.get(parent_name.lower())
        if parent is None:
            parent = _create_ancestors(col, by_name, parent_name)
        deck.parent_id = parent.id
        deck.name = parent.name + DECK_SEPARATOR + short


def _create_ancestors(col: Collection, by_name: Dict[str, Deck], full_name: str) -> Deck:
    parent = None
    path = []
    for segment in full_name.split(DECK_SEPARATOR):
        path.append(segment)
        name = DECK_SEPARATOR.join(path)
        deck = by_name.get(name.lower())
        if deck is None:
            deck = Deck(
                id=col.new_id(col.decks),
                name=name,
                parent_id=parent.id if parent else None,
                mod=int_time(),
                usn=-1,
            )
            col.decks[deck.id] = deck
            by_name[name.lower()] = deck
            logger.warning(f"Created missing parent deck {name!r} ({deck.id})")
        parent = deck
    return parent


def _read_notes(conn, col: Collection):
    for nid, guid, mid, mod, usn, tags, flds, flags, data in conn.execute(
            "SELECT id, guid, mid, mod, usn, tags, flds, flags, data FROM notes"):
        model = col.models.get(mid)
        if model is None:
            raise ReferentialError(f"Note {nid} references missing note type {mid}")
        values = split_fields(flds)
        expected = len(model.fields)
        if len(values) > expected:
            raise SchemaError(
                f"Note {nid} has {len(values)} fields but note type {mid} defines {expected}")
        if len(values) < expected:
            logger.warning(f"Note {nid} has {len(values)} of {expected} fields, padding")
            values += [""] * (expected - len(values))
        col.notes[nid] = Note(
            id=nid, mid=mid, fields=values, tags=split_tags(tags), guid=guid,
            mod=mod, usn=usn, flags=flags, data=data or "",
        )
    logger.debug(f"Read {len(col.notes)} notes")


def _read_cards(conn, col: Collection):
    for row in conn.execute(
            "SELECT id, nid, did, ord, mod, usn, type, queue, due, ivl, factor, reps, "
            "lapses, left, odue, odid, flags, data FROM cards"):
        cid, nid, did, ord, mod, usn = row[:6]
        note = col.notes.get(nid)
        if note is None:
            raise ReferentialError(f"Card {cid} references missing note {nid}")
        if did not in col.decks:
            raise ReferentialError(f"Card {cid} references missing deck {did}")
        model = col.models[note.mid]
        if not model.is_cloze and not 0 <= ord < len(model.templates):
            raise ReferentialError(
                f"Card {cid} has ordinal {ord} but note type {model.id} "
                f"has {len(model.templates)} template(s)")
        col.cards[cid] = Card(
            id=cid, nid=nid, did=did, ord=ord,
            kind=determine_card_kind(model),
            scheduling=Scheduling(*row[6:17]),
            mod=mod, usn=usn, data=row[17] or "",
        )
    logger.debug(f"Read {len(col.cards)} cards")


def _read_revlog(conn, col: Collection):
    count = 0
    for row in conn.execute(
            "SELECT id, cid, usn, ease, ivl, lastIvl, factor, time, type FROM revlog ORDER BY id"):
        entry = ReviewLogEntry(*row)
        if entry.cid not in col.cards:
            logger.debug(f"Review log {entry.id} belongs to card {entry.cid} not in package")
        col.revlog.setdefault(entry.cid, []).append(entry)
        count += 1
    logger.debug(f"Read {count} review log entries")


def _read_graves(conn, col: Collection):
    if not _table_exists(conn, "graves"):
        logger.warning("Collection has no graves table")
        return
    col.graves = [
        Grave(oid=oid, type=type, usn=usn)
        for oid, type, usn in conn.execute("SELECT oid, type, usn FROM graves")
    ]


# Writing
##########################################################################


def write_collection(collection: Collection, generation: int) -> bytes:
    """Emit ``collection`` as a database of the given generation and return its bytes."""
    fd, path = tempfile.mkstemp(suffix=".anki2", prefix=".ankipkg_")
    os.close(fd)
    try:
        conn = connect(path)
        try:
            write_rows(conn, collection, generation)
            conn.commit()
        except sqlite3.Error as e:
            raise SchemaError(f"Could not write collection database: {e}") from e
        finally:
            conn.close()
        with open(path, "rb") as f:
            return f.read()
    finally:
        os.unlink(path)


def write_rows(conn, collection: Collection, generation: int):
    """Create the schema for ``generation`` and insert every row of ``collection``."""
    if generation not in (SCHEMA_LEGACY, SCHEMA_MODERN):
        raise PackageError(f"Unsupported schema generation {generation}")

    conn.executescript(MODERN_SCHEMA if generation == SCHEMA_MODERN else LEGACY_SCHEMA)
    if generation == SCHEMA_MODERN:
        _write_modern_tables(conn, collection)
    else:
        _write_legacy_col(conn, collection)

    _write_notes(conn, collection)
    _write_cards(conn, collection)
    conn.executemany(
        "INSERT INTO revlog VALUES (?,?,?,?,?,?,?,?,?)",
        [(e.id, e.cid, e.usn, e.ease, e.ivl, e.last_ivl, e.factor, e.time, e.type)
         for entries in collection.revlog.values() for e in entries],
    )
    if generation == SCHEMA_MODERN:
        conn.executemany("INSERT OR REPLACE INTO graves (oid, type, usn) VALUES (?,?,?)",
                         [(g.oid, g.type, g.usn) for g in collection.graves])
    else:
        conn.executemany("INSERT INTO graves (usn, oid, type) VALUES (?,?,?)",
                         [(g.usn, g.oid, g.type) for g in collection.graves])
    logger.debug(f"Wrote schema V{generation} rows: {collection.summary()}")


def _write_notes(conn, col: Collection):
    rows = []
    for note in col.notes.values():
        model = col.models.get(note.mid)
        sort_idx = model.sort_field if model and note.fields else 0
        sort_idx = sort_idx if sort_idx < len(note.fields) else 0
        sfld = strip_html_media(note.fields[sort_idx]) if note.fields else ""
        csum = field_checksum(note.fields[0]) if note.fields else 0
        rows.append((note.id, note.guid, note.mid, note.mod, note.usn, join_tags(note.tags),
                     join_fields(note.fields), sfld, csum, note.flags, note.data))
    conn.executemany("INSERT INTO notes VALUES (?,?,?,?,?,?,?,?,?,?,?)", rows)


def _write_cards(conn, col: Collection):
    rows = []
    for card in col.cards.values():
        s = card.scheduling
        rows.append((card.id, card.nid, card.did, card.ord, card.mod, card.usn,
                     s.type, s.queue, s.due, s.ivl, s.factor, s.reps, s.lapses, s.left,
                     s.odue, s.odid, s.flags, card.data))
    conn.executemany("INSERT INTO cards VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)", rows)


def _all_tags(col: Collection) -> List[str]:
    seen = {}
    for note in col.notes.values():
        for tag in note.tags:
            seen.setdefault(tag.lower(), tag)
    return sorted(seen.values(), key=str.lower)


# Legacy emission

def _write_legacy_col(conn, col: Collection):
    meta = col.meta
    models = {str(m.id): _legacy_model_json(m) for m in col.models.values()}
    decks = {str(d.id): _legacy_deck_json(d) for d in col.decks.values()}
    conn.execute(
        "INSERT INTO col VALUES (1,?,?,?,?,?,?,?,?,?,?,?,?)",
        (meta.crt, meta.mod, meta.scm, SCHEMA_LEGACY, meta.dty, meta.usn, meta.ls,
         json.dumps(meta.conf), json.dumps(models), json.dumps(decks),
         json.dumps(_legacy_dconf(col)), json.dumps(_legacy_tags(col))),
    )


def _legacy_requirements(model: NoteType) -> List[list]:
    names = [f.name.lower() for f in model.fields]
    req = []
    for t in model.templates:
        used = sorted({names.index(n.strip().lower())
                       for n in _field_ref.findall(t.qfmt) if n.strip().lower() in names})
        req.append([t.ord, "any" if used else "none", used])
    return req


def _legacy_model_json(model: NoteType) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "did": DEFAULT_DECK_ID,
        "latexsvg": False,
        "req": _legacy_requirements(model),
        "tags": [],
        "vers": [],
    }
    nt_config = model.modern.get("config")
    if nt_config:
        msg = protos.decode(protos.notetype_config(), nt_config, "notetype config")
        out["latexsvg"] = msg.latex_svg
    out.update(model.legacy)
    out.update({
        "id": model.id,
        "name": model.name,
        "type": int(model.kind),
        "mod": model.mod,
        "usn": model.usn,
        "sortf": model.sort_field,
        "css": model.css,
        "latexPre": model.latex_pre,
        "latexPost": model.latex_post,
        "flds": [_legacy_field_json(f) for f in model.fields],
        "tmpls": [_legacy_template_json(t) for t in model.templates],
    })
    return out


def _legacy_field_json(f: NoteField) -> Dict[str, Any]:
    out: Dict[str, Any] = {"rtl": False, "font": "Arial", "size": 20, "media": []}
    if f.modern.get("config"):
        msg = protos.decode(protos.field_config(), f.modern["config"], "field config")
        out["rtl"] = msg.rtl
        out["font"] = msg.font_name or "Arial"
        out["size"] = msg.font_size or 20
    out.update(f.legacy)
    out.update({"name": f.name, "ord": f.ord, "sticky": f.sticky})
    return out


def _legacy_template_json(t: CardTemplate) -> Dict[str, Any]:
    out: Dict[str, Any] = {"did": None, "bqfmt": "", "bafmt": ""}
    if t.modern.get("config"):
        msg = protos.decode(protos.template_config(), t.modern["config"], "template config")
        out["bqfmt"] = msg.q_format_browser
        out["bafmt"] = msg.a_format_browser
        out["did"] = msg.target_deck_id or None
    out.update(t.legacy)
    out.update({"name": t.name, "ord": t.ord, "qfmt": t.qfmt, "afmt": t.afmt})
    return out


def _legacy_deck_json(deck: Deck) -> Dict[str, Any]:
    out: Dict[str, Any] = dict(_DECK_DEFAULTS)
    if deck.dyn:
        out.update(_FILTERED_DECK_DEFAULTS)
    if deck.modern.get("common"):
        common = protos.decode(protos.deck_common(), deck.modern["common"], "deck common")
        out["collapsed"] = common.study_collapsed
        out["browserCollapsed"] = common.browser_collapsed
    if deck.modern.get("kind") and not deck.dyn:
        kind = protos.decode(protos.deck_kind(), deck.modern["kind"], "deck kind")
        out["extendNew"] = kind.normal.extend_new
        out["extendRev"] = kind.normal.extend_review
    out.update(deck.legacy)
    out.update({
        "id": deck.id,
        "name": deck.name,
        "desc": deck.description,
        "dyn": 1 if deck.dyn else 0,
        "mod": deck.mod,
        "usn": deck.usn,
    })
    if not deck.dyn:
        out["conf"] = deck.conf_id
    return out


def _legacy_dconf(col: Collection) -> Dict[str, Any]:
    if col.passthrough.dconf:
        return col.passthrough.dconf
    if not col.passthrough.deck_config_rows:
        return {str(DEFAULT_CONF_ID): dict(DEFAULT_DCONF)}

    dconf = {}
    for dcid, name, mtime, usn, config in col.passthrough.deck_config_rows:
        msg = protos.decode(protos.deck_config(), config, "deck config")
        conf = json.loads(json.dumps(DEFAULT_DCONF))
        conf.update({"id": dcid, "name": name, "mod": mtime, "usn": usn})
        if msg.new_per_day:
            conf["new"]["perDay"] = msg.new_per_day
        if msg.reviews_per_day:
            conf["rev"]["perDay"] = msg.reviews_per_day
        if msg.learn_steps:
            conf["new"]["delays"] = list(msg.learn_steps)
        if msg.relearn_steps:
            conf["lapse"]["delays"] = list(msg.relearn_steps)
        if msg.initial_ease:
            conf["new"]["initialFactor"] = int(round(msg.initial_ease * 1000))
        dconf[str(dcid)] = conf
    return dconf


def _missing_tags(col: Collection, known) -> List[str]:
    """Note tags absent from a registry carried over from the source file."""
    known = {tag.lower() for tag in known}
    return [tag for tag in _all_tags(col) if tag.lower() not in known]


def _legacy_tags(col: Collection) -> Dict[str, int]:
    if col.passthrough.tags:
        tags = dict(col.passthrough.tags)
    elif col.passthrough.tag_rows:
        tags = {tag: usn for tag, usn, _collapsed, _config in col.passthrough.tag_rows}
    else:
        return {tag: 0 for tag in _all_tags(col)}
    for tag in _missing_tags(col, tags):
        tags[tag] = -1
    return tags


# Modern emission

def _write_modern_tables(conn, col: Collection):
    meta = col.meta
    conn.execute(
        "INSERT INTO col VALUES (1,?,?,?,?,?,?,?,'','','','','')",
        (meta.crt, meta.mod, meta.scm, SCHEMA_MODERN, meta.dty, meta.usn, meta.ls),
    )

    for model in col.models.values():
        conn.execute("INSERT INTO notetypes VALUES (?,?,?,?,?)",
                     (model.id, model.name, model.mod, model.usn, _modern_notetype_config(model)))
        conn.executemany("INSERT INTO fields VALUES (?,?,?,?)", [
            (model.id, f.ord, f.name, _modern_field_config(f)) for f in model.fields
        ])
        conn.executemany("INSERT INTO templates VALUES (?,?,?,?,?,?)", [
            (model.id, t.ord, t.name, t.modern.get("mtime_secs", model.mod),
             t.modern.get("usn", model.usn), _modern_template_config(t))
            for t in model.templates
        ])

    conn.executemany("INSERT INTO decks VALUES (?,?,?,?,?,?)", [
        (d.id, d.name.replace(DECK_SEPARATOR, MODERN_DECK_SEPARATOR), d.mod, d.usn,
         _modern_deck_common(d), _modern_deck_kind(d))
        for d in col.decks.values()
    ])
    conn.executemany("INSERT INTO deck_config VALUES (?,?,?,?,?)", _modern_deck_config_rows(col))
    conn.executemany("INSERT INTO config VALUES (?,?,?,?)", _modern_config_rows(col))
    conn.executemany("INSERT OR REPLACE INTO tags VALUES (?,?,?,?)", _modern_tag_rows(col))


def _modern_notetype_config(model: NoteType) -> bytes:
    msg = protos.decode(protos.notetype_config(), model.modern.get("config"), "notetype config")
    if "latexsvg" in model.legacy:
        msg.latex_svg = bool(model.legacy["latexsvg"])
    msg.kind = int(model.kind)
    msg.sort_field_idx = model.sort_field
    msg.css = model.css
    msg.latex_pre = model.latex_pre
    msg.latex_post = model.latex_post
    return protos.encode(msg, "notetype config")


def _modern_field_config(f: NoteField) -> bytes:
    msg = protos.decode(protos.field_config(), f.modern.get("config"), "field config")
    if f.legacy:
        msg.rtl = bool(f.legacy.get("rtl", False))
        msg.font_name = f.legacy.get("font") or "Arial"
        msg.font_size = int(f.legacy.get("size") or 20)
    msg.sticky = f.sticky
    return protos.encode(msg, "field config")


def _modern_template_config(t: CardTemplate) -> bytes:
    msg = protos.decode(protos.template_config(), t.modern.get("config"), "template config")
    if t.legacy:
        msg.q_format_browser = t.legacy.get("bqfmt") or ""
        msg.a_format_browser = t.legacy.get("bafmt") or ""
        if isinstance(t.legacy.get("did"), int):
            msg.target_deck_id = t.legacy["did"]
    msg.q_format = t.qfmt
    msg.a_format = t.afmt
    return protos.encode(msg, "template config")


def _modern_deck_common(deck: Deck) -> bytes:
    msg = protos.decode(protos.deck_common(), deck.modern.get("common"), "deck common")
    if deck.legacy:
        msg.study_collapsed = bool(deck.legacy.get("collapsed", False))
        msg.browser_collapsed = bool(deck.legacy.get("browserCollapsed", False))
    return protos.encode(msg, "deck common")


def _modern_deck_kind(deck: Deck) -> bytes:
    msg = protos.decode(protos.deck_kind(), deck.modern.get("kind"), "deck kind")
    if deck.dyn:
        if msg.WhichOneof("kind") != "filtered":
            msg.filtered.SetInParent()
    else:
        msg.normal.config_id = deck.conf_id
        msg.normal.description = deck.description
        if deck.legacy:
            msg.normal.extend_new = int(deck.legacy.get("extendNew") or 0)
            msg.normal.extend_review = int(deck.legacy.get("extendRev") or 0)
    return protos.encode(msg, "deck kind")


def _modern_deck_config_rows(col: Collection) -> List[tuple]:
    if col.passthrough.deck_config_rows:
        return list(col.passthrough.deck_config_rows)

    dconf = col.passthrough.dconf or {str(DEFAULT_CONF_ID): DEFAULT_DCONF}
    rows = []
    for conf in dconf.values():
        if conf.get("dyn"):
            continue
        msg = protos.deck_config()()
        new, rev, lapse = conf.get("new", {}), conf.get("rev", {}), conf.get("lapse", {})
        msg.new_per_day = int(new.get("perDay", 20))
        msg.reviews_per_day = int(rev.get("perDay", 200))
        msg.learn_steps.extend(float(x) for x in new.get("delays", [1, 10]))
        msg.relearn_steps.extend(float(x) for x in lapse.get("delays", [10]))
        msg.initial_ease = new.get("initialFactor", STARTING_FACTOR) / 1000.0
        rows.append((int(conf["id"]), conf.get("name", "Default"), conf.get("mod", 0),
                     conf.get("usn", 0), protos.encode(msg, "deck config")))
    return rows


def _modern_config_rows(col: Collection) -> List[tuple]:
    if col.passthrough.config_rows:
        return list(col.passthrough.config_rows)
    return [
        (key, 0, col.meta.mod // 1000, json.dumps(value).encode("utf-8"))
        for key, value in sorted(col.meta.conf.items())
    ]


def _modern_tag_rows(col: Collection) -> List[tuple]:
    if col.passthrough.tag_rows:
        rows = list(col.passthrough.tag_rows)
    elif col.passthrough.tags:
        rows = [(tag, usn, False, None) for tag, usn in col.passthrough.tags.items()]
    else:
        return [(tag, 0, False, None) for tag in _all_tags(col)]
    rows.extend((tag, -1, False, None) for tag in _missing_tags(col, [row[0] for row in rows]))
    return rows
