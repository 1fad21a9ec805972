# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Domain entities of a collection.

Entities reference each other by id only; the Collection owns them all.
Attributes named ``legacy`` and ``modern`` hold the parts of the original
row that are not modeled (remaining JSON keys, or protobuf blobs) so an
export can reproduce them. They are excluded from equality, which compares
modeled values only.
"""

import enum
import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .consts import (
    DECK_SEPARATOR,
    DEFAULT_CONF_ID,
    QUEUE_TYPE_NEW,
    CARD_TYPE_NEW,
    STARTING_FACTOR,
)


class ModelKind(enum.IntEnum):
    STANDARD = 0
    CLOZE = 1


class CardKind(str, enum.Enum):
    BASIC = "basic"
    BASIC_REVERSED = "basic-reversed"
    BASIC_OPTIONAL_REVERSED = "basic-optional-reversed"
    BASIC_TYPE = "basic-type"
    CLOZE = "cloze"


class CardOrigin(enum.Enum):
    IMPORTED = "imported"
    GENERATED = "generated"

    @property
    def capabilities(self) -> "OriginCapabilities":
        return ORIGIN_CAPABILITIES[self]


@dataclass(frozen=True)
class OriginCapabilities:
    can_hard_delete: bool
    can_restore: bool


ORIGIN_CAPABILITIES = {
    CardOrigin.IMPORTED: OriginCapabilities(can_hard_delete=False, can_restore=True),
    CardOrigin.GENERATED: OriginCapabilities(can_hard_delete=True, can_restore=False),
}


def _passthrough():
    return field(default_factory=dict, compare=False, repr=False)


@dataclass
class NoteField:
    name: str
    ord: int
    sticky: bool = False
    legacy: Dict[str, Any] = _passthrough()
    modern: Dict[str, Any] = _passthrough()


@dataclass
class CardTemplate:
    name: str
    ord: int
    qfmt: str
    afmt: str
    legacy: Dict[str, Any] = _passthrough()
    modern: Dict[str, Any] = _passthrough()


@dataclass
class NoteType:
    id: int
    name: str
    kind: ModelKind = ModelKind.STANDARD
    fields: List[NoteField] = field(default_factory=list)
    templates: List[CardTemplate] = field(default_factory=list)
    css: str = ""
    latex_pre: str = ""
    latex_post: str = ""
    sort_field: int = 0
    mod: int = field(default=0, compare=False)
    usn: int = field(default=0, compare=False)
    legacy: Dict[str, Any] = _passthrough()
    modern: Dict[str, Any] = _passthrough()

    @property
    def is_cloze(self) -> bool:
        return self.kind == ModelKind.CLOZE

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def field_index(self, name: str) -> Optional[int]:
        """Case-insensitive lookup of a field's position."""
        wanted = name.strip().lower()
        for index, f in enumerate(self.fields):
            if f.name.lower() == wanted:
                return index
        return None

    def template_for(self, ord: int) -> Optional[CardTemplate]:
        if self.is_cloze:
            return self.templates[0] if self.templates else None
        if 0 <= ord < len(self.templates):
            return self.templates[ord]
        return None

    def invariant_errors(self) -> List[str]:
        errors = []
        if [f.ord for f in self.fields] != list(range(len(self.fields))):
            errors.append(f"note type {self.id} field ordinals are not contiguous from 0")
        if [t.ord for t in self.templates] != list(range(len(self.templates))):
            errors.append(f"note type {self.id} template ordinals are not contiguous from 0")
        if self.is_cloze and len(self.templates) != 1:
            errors.append(f"cloze note type {self.id} has {len(self.templates)} templates")
        return errors


@dataclass
class Deck:
    id: int
    name: str
    description: str = ""
    parent_id: Optional[int] = None
    children: List[int] = field(default_factory=list, compare=False)
    dyn: bool = False
    conf_id: int = DEFAULT_CONF_ID
    mod: int = field(default=0, compare=False)
    usn: int = field(default=0, compare=False)
    legacy: Dict[str, Any] = _passthrough()
    modern: Dict[str, Any] = _passthrough()

    @property
    def short_name(self) -> str:
        return self.name.split(DECK_SEPARATOR)[-1]

    @property
    def depth(self) -> int:
        return self.name.count(DECK_SEPARATOR)


@dataclass
class Note:
    id: int
    mid: int
    fields: List[str]
    tags: List[str] = field(default_factory=list)
    guid: str = ""
    mod: int = 0
    usn: int = 0
    flags: int = 0
    data: str = ""


@dataclass
class Scheduling:
    type: int = CARD_TYPE_NEW
    queue: int = QUEUE_TYPE_NEW
    due: int = 0
    ivl: int = 0
    factor: int = STARTING_FACTOR
    reps: int = 0
    lapses: int = 0
    left: int = 0
    odue: int = 0
    odid: int = 0
    flags: int = 0


@dataclass
class Card:
    id: int
    nid: int
    did: int
    ord: int = 0
    kind: CardKind = CardKind.BASIC
    scheduling: Scheduling = field(default_factory=Scheduling)
    mod: int = 0
    usn: int = 0
    data: str = ""
    origin: CardOrigin = field(default=CardOrigin.IMPORTED, compare=False)
    is_deleted: bool = field(default=False, compare=False)


@dataclass
class ReviewLogEntry:
    id: int
    cid: int
    usn: int = 0
    ease: int = 0
    ivl: int = 0
    last_ivl: int = 0
    factor: int = 0
    time: int = 0
    type: int = 0


@dataclass
class MediaFile:
    filename: str
    data: bytes
    size: Optional[int] = None
    sha1: Optional[bytes] = None

    def __post_init__(self):
        if self.size is None:
            self.size = len(self.data)
        if self.sha1 is None:
            self.sha1 = hashlib.sha1(self.data).digest()


@dataclass
class Grave:
    oid: int
    type: int
    usn: int = -1


@dataclass
class CollectionMeta:
    """The ``col`` row, minus the JSON blobs that are modeled elsewhere."""
    crt: int = 0
    mod: int = field(default=0, compare=False)
    scm: int = 0
    ver: int = field(default=11, compare=False)
    dty: int = 0
    usn: int = 0
    ls: int = 0
    conf: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Passthrough:
    """Rows whose full semantics are not modeled, kept verbatim for export.

    Legacy collections fill ``dconf``/``tags``; modern ones fill the row lists.
    """
    dconf: Dict[str, Any] = field(default_factory=dict)
    tags: Dict[str, Any] = field(default_factory=dict)
    deck_config_rows: List[tuple] = field(default_factory=list)
    config_rows: List[tuple] = field(default_factory=list)
    tag_rows: List[tuple] = field(default_factory=list)


def determine_card_kind(model: NoteType) -> CardKind:
    """Derive the card kind tag from a note type's kind and name."""
    if model.is_cloze:
        return CardKind.CLOZE

    name = model.name.lower()
    if "reversed" in name and "optional" in name:
        return CardKind.BASIC_OPTIONAL_REVERSED
    if "reversed" in name:
        return CardKind.BASIC_REVERSED
    if "type" in name:
        return CardKind.BASIC_TYPE

    return CardKind.BASIC
