# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
In-memory collection: id-keyed maps of every entity plus a deck tree.

Decks are stored once, in ``decks``. The tree (``deck_tree``) is derived from
the ``parent_id`` pointers and rebuilt after every structural change, so the
two can never disagree. Deck mutations that would break an invariant return
``False``/``None`` rather than raising.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .consts import (
    DECK_SEPARATOR,
    DEFAULT_CLOZE_CSS,
    DEFAULT_CSS,
    DEFAULT_DECK_ID,
    DEFAULT_DECK_NAME,
    DEFAULT_LATEX_POST,
    DEFAULT_LATEX_PRE,
    REM_CARD,
    REM_DECK,
    REM_NOTE,
)
from .ids import id_generator
from .models import (
    Card,
    CardOrigin,
    CardTemplate,
    CollectionMeta,
    Deck,
    Grave,
    MediaFile,
    ModelKind,
    Note,
    NoteField,
    NoteType,
    Passthrough,
    ReviewLogEntry,
)
from .utils import int_time

logger = logging.getLogger("ankipkg.collection")

DEFAULT_COLLECTION_CONF = {
    "activeDecks": [DEFAULT_DECK_ID],
    "curDeck": DEFAULT_DECK_ID,
    "newSpread": 0,
    "collapseTime": 1200,
    "timeLim": 0,
    "estTimes": True,
    "dueCounts": True,
    "curModel": None,
    "nextPos": 1,
    "sortType": "noteFld",
    "sortBackwards": False,
    "addToCur": True,
}


@dataclass
class DeckNode:
    deck: Deck
    children: List["DeckNode"] = field(default_factory=list)

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()


def basic_note_type(model_id: int) -> NoteType:
    return NoteType(
        id=model_id,
        name="Basic",
        kind=ModelKind.STANDARD,
        fields=[NoteField("Front", 0), NoteField("Back", 1)],
        templates=[CardTemplate(
            "Card 1", 0,
            qfmt="{{Front}}",
            afmt="{{FrontSide}}\n\n<hr id=answer>\n\n{{Back}}",
        )],
        css=DEFAULT_CSS,
        latex_pre=DEFAULT_LATEX_PRE,
        latex_post=DEFAULT_LATEX_POST,
        mod=int_time(),
    )


def cloze_note_type(model_id: int) -> NoteType:
    return NoteType(
        id=model_id,
        name="Cloze",
        kind=ModelKind.CLOZE,
        fields=[NoteField("Text", 0), NoteField("Back Extra", 1)],
        templates=[CardTemplate(
            "Cloze", 0,
            qfmt="{{cloze:Text}}",
            afmt="{{cloze:Text}}<br>\n{{Back Extra}}",
        )],
        css=DEFAULT_CLOZE_CSS,
        latex_pre=DEFAULT_LATEX_PRE,
        latex_post=DEFAULT_LATEX_POST,
        mod=int_time(),
    )


class Collection:
    """Owns all decks, note types, notes, cards, review logs and media."""

    def __init__(self):
        self.decks: Dict[int, Deck] = {}
        self.models: Dict[int, NoteType] = {}
        self.notes: Dict[int, Note] = {}
        self.cards: Dict[int, Card] = {}
        self.revlog: Dict[int, List[ReviewLogEntry]] = {}
        self.media: Dict[str, MediaFile] = {}
        self.graves: List[Grave] = []
        self.meta = CollectionMeta()
        self.passthrough = Passthrough()
        # PackageVersion / schema generation the collection was read from
        self.source_version = None
        self.schema_version = None
        self.deck_tree: List[DeckNode] = []
        self._root_order: List[int] = []

    @classmethod
    def empty(cls) -> "Collection":
        """A fresh collection with the Default deck and stock note types."""
        col = cls()
        now = int_time()
        col.meta = CollectionMeta(crt=now - now % 86400, mod=now * 1000, scm=now * 1000,
                                  conf=dict(DEFAULT_COLLECTION_CONF))
        col.decks[DEFAULT_DECK_ID] = Deck(id=DEFAULT_DECK_ID, name=DEFAULT_DECK_NAME, mod=now)
        basic = basic_note_type(col.new_id(col.models))
        col.models[basic.id] = basic
        cloze = cloze_note_type(col.new_id(col.models))
        col.models[cloze.id] = cloze
        col.meta.conf["curModel"] = basic.id
        col.rebuild_tree()
        return col

    def new_id(self, taken: Iterable[int]) -> int:
        return id_generator.next_unused(taken)

    # Deck tree
    ##########################################################################

    def rebuild_tree(self):
        """
        Recompute ``children`` lists and ``deck_tree`` from parent pointers.

        Existing child order is kept; decks new to a parent are appended.
        """
        wanted: Dict[Optional[int], List[int]] = {}
        for deck in self.decks.values():
            parent = deck.parent_id if deck.parent_id in self.decks else None
            wanted.setdefault(parent, []).append(deck.id)

        def ordered(previous: List[int], members: List[int]) -> List[int]:
            member_set = set(members)
            kept = [i for i in previous if i in member_set]
            kept_set = set(kept)
            return kept + [i for i in members if i not in kept_set]

        for deck in self.decks.values():
            deck.children = ordered(deck.children, wanted.get(deck.id, []))
        self._root_order = ordered(self._root_order, wanted.get(None, []))

        def node(deck_id: int) -> DeckNode:
            deck = self.decks[deck_id]
            return DeckNode(deck, [node(c) for c in deck.children])

        self.deck_tree = [node(i) for i in self._root_order]

    def check_tree(self) -> List[str]:
        """Return descriptions of any disagreement between the map and the tree."""
        errors = []
        seen = set()
        for root in self.deck_tree:
            if root.deck.parent_id is not None:
                errors.append(f"root deck {root.deck.id} has parent {root.deck.parent_id}")
            for n in root.walk():
                seen.add(n.deck.id)
                if self.decks.get(n.deck.id) is not n.deck:
                    errors.append(f"tree node {n.deck.id} is not the mapped deck")
                for child in n.children:
                    if child.deck.parent_id != n.deck.id:
                        errors.append(f"deck {child.deck.id} is under {n.deck.id} "
                                      f"but points to {child.deck.parent_id}")
                    expected = n.deck.name + DECK_SEPARATOR + child.deck.short_name
                    if child.deck.name != expected:
                        errors.append(f"deck {child.deck.id} named {child.deck.name!r}, "
                                      f"expected {expected!r}")
        missing = set(self.decks) - seen
        if missing:
            errors.append(f"decks missing from tree: {sorted(missing)}")
        return errors

    def descendants(self, deck_id: int) -> List[int]:
        deck = self.decks.get(deck_id)
        if deck is None:
            return []
        result = []
        for child_id in deck.children:
            result.append(child_id)
            result.extend(self.descendants(child_id))
        return result

    def ancestors(self, deck_id: int) -> List[int]:
        result = []
        deck = self.decks.get(deck_id)
        while deck is not None and deck.parent_id is not None:
            result.append(deck.parent_id)
            deck = self.decks.get(deck.parent_id)
        return result

    def subtree_ids(self, deck_id: int, include: Optional[Iterable[int]] = None) -> Set[int]:
        """
        The deck plus its descendants.

        Args:
            deck_id: root of the subtree
            include: when given, only these descendants are selected
        """
        if deck_id not in self.decks:
            return set()
        below = set(self.descendants(deck_id))
        if include is not None:
            below &= set(include)
        return {deck_id} | below

    # Queries
    ##########################################################################

    def get_deck(self, deck_id: int) -> Optional[Deck]:
        return self.decks.get(deck_id)

    def get_deck_by_name(self, name: str) -> Optional[Deck]:
        wanted = name.strip().lower()
        for deck in self.decks.values():
            if deck.name.lower() == wanted:
                return deck
        return None

    def get_model(self, model_id: int) -> Optional[NoteType]:
        return self.models.get(model_id)

    def get_note(self, note_id: int) -> Optional[Note]:
        return self.notes.get(note_id)

    def get_card(self, card_id: int) -> Optional[Card]:
        return self.cards.get(card_id)

    def cards_of_note(self, note_id: int) -> List[Card]:
        return [c for c in self.cards.values() if c.nid == note_id]

    def cards_in_deck(self, deck_id: int, include_subdecks: bool = False,
                      include_deleted: bool = False) -> List[Card]:
        deck_ids = self.subtree_ids(deck_id) if include_subdecks else {deck_id}
        return [
            c for c in self.cards.values()
            if c.did in deck_ids and (include_deleted or not c.is_deleted)
        ]

    def card_count(self, deck_id: Optional[int] = None, include_subdecks: bool = False) -> int:
        """Number of cards not flagged as deleted, in one deck or overall."""
        if deck_id is None:
            return sum(1 for c in self.cards.values() if not c.is_deleted)
        return len(self.cards_in_deck(deck_id, include_subdecks))

    def deck_card_counts(self, include_subdecks: bool = False) -> Dict[int, int]:
        counts = {deck_id: 0 for deck_id in self.decks}
        for card in self.cards.values():
            if not card.is_deleted and card.did in counts:
                counts[card.did] += 1
        if include_subdecks:
            direct = dict(counts)
            for deck_id in self.decks:
                counts[deck_id] = direct[deck_id] + sum(direct[d] for d in self.descendants(deck_id))
        return counts

    # Deck mutations
    ##########################################################################

    def _name_taken(self, full_name: str, ignore: Iterable[int] = ()) -> bool:
        existing = self.get_deck_by_name(full_name)
        return existing is not None and existing.id not in set(ignore)

    def _touch(self, deck: Deck):
        deck.mod = int_time()
        deck.usn = -1

    def _rename_subtree(self, deck: Deck, new_full_name: str):
        old_prefix = deck.name + DECK_SEPARATOR
        deck.name = new_full_name
        self._touch(deck)
        for child_id in self.descendants(deck.id):
            child = self.decks[child_id]
            child.name = new_full_name + DECK_SEPARATOR + child.name[len(old_prefix):]
            self._touch(child)

    def create_deck(self, name: str, parent_id: Optional[int] = None,
                    description: str = "") -> Optional[Deck]:
        """
        Create a deck, optionally as a subdeck of ``parent_id``.

        Returns:
            The new deck, or None when the name is empty or taken, or the
            parent does not exist or is a filtered deck.
        """
        name = (name or "").strip()
        if not name or DECK_SEPARATOR in name:
            return None
        full_name = name
        if parent_id is not None:
            parent = self.decks.get(parent_id)
            if parent is None or parent.dyn:
                return None
            full_name = parent.name + DECK_SEPARATOR + name
        if self._name_taken(full_name):
            return None

        deck = Deck(
            id=self.new_id(self.decks),
            name=full_name,
            description=description,
            parent_id=parent_id,
            mod=int_time(),
            usn=-1,
        )
        self.decks[deck.id] = deck
        self.rebuild_tree()
        logger.debug(f"Created deck {deck.id} {full_name!r}")
        return deck

    def ensure_deck_path(self, full_name: str) -> Deck:
        """Return the deck named ``full_name``, creating it and any missing ancestors."""
        existing = self.get_deck_by_name(full_name)
        if existing is not None:
            return existing
        parent_id = None
        deck = None
        for segment in [s.strip() for s in full_name.split(DECK_SEPARATOR)]:
            name = segment if parent_id is None else \
                self.decks[parent_id].name + DECK_SEPARATOR + segment
            deck = self.get_deck_by_name(name)
            if deck is None:
                deck = self.create_deck(segment or "blank", parent_id)
            parent_id = deck.id
        return deck

    def rename_deck(self, deck_id: int, new_short_name: str) -> bool:
        deck = self.decks.get(deck_id)
        if deck is None or deck_id == DEFAULT_DECK_ID:
            return False
        new_short_name = (new_short_name or "").strip()
        if not new_short_name or DECK_SEPARATOR in new_short_name:
            return False
        if deck.parent_id is not None:
            new_full = self.decks[deck.parent_id].name + DECK_SEPARATOR + new_short_name
        else:
            new_full = new_short_name
        if self._name_taken(new_full, ignore=[deck_id]):
            return False

        old_name = deck.name
        self._rename_subtree(deck, new_full)
        self.rebuild_tree()
        logger.info(f"Renamed deck {old_name!r} to {new_full!r}")
        return True

    def move_deck(self, deck_id: int, new_parent_id: Optional[int]) -> bool:
        """Move a deck (with its subdecks) under ``new_parent_id``, or to the top level when None."""
        deck = self.decks.get(deck_id)
        if deck is None or deck_id == DEFAULT_DECK_ID:
            return False
        if new_parent_id is not None:
            parent = self.decks.get(new_parent_id)
            if parent is None or parent.dyn:
                return False
            if new_parent_id == deck_id or new_parent_id in self.descendants(deck_id):
                return False
            new_full = parent.name + DECK_SEPARATOR + deck.short_name
        else:
            new_full = deck.short_name
        if new_parent_id == deck.parent_id:
            return True
        if self._name_taken(new_full, ignore=[deck_id]):
            return False

        deck.parent_id = new_parent_id
        self._rename_subtree(deck, new_full)
        self.rebuild_tree()
        logger.info(f"Moved deck {deck_id} to {new_full!r}")
        return True

    def delete_deck(self, deck_id: int, delete_cards: bool = False,
                    delete_subdecks: bool = False) -> bool:
        """
        Delete a deck.

        Args:
            deck_id: the deck to delete; the Default deck cannot be deleted
            delete_cards: delete the cards (and notes left without cards)
                instead of moving them to the Default deck
            delete_subdecks: delete all descendants too, instead of promoting
                the direct children to the deleted deck's parent
        """
        deck = self.decks.get(deck_id)
        if deck is None or deck_id == DEFAULT_DECK_ID:
            return False

        parent_prefix = ""
        if deck.parent_id is not None:
            parent_prefix = self.decks[deck.parent_id].name + DECK_SEPARATOR

        if delete_subdecks:
            doomed = [deck_id] + self.descendants(deck_id)
        else:
            doomed = [deck_id]
            for child_id in deck.children:
                promoted = parent_prefix + self.decks[child_id].short_name
                if self._name_taken(promoted, ignore=[child_id, deck_id]):
                    logger.warning(f"Cannot promote deck {child_id}: {promoted!r} exists")
                    return False
            for child_id in list(deck.children):
                child = self.decks[child_id]
                child.parent_id = deck.parent_id
                self._rename_subtree(child, parent_prefix + child.short_name)

        doomed_set = set(doomed)
        affected = [c for c in self.cards.values() if c.did in doomed_set]
        if delete_cards:
            for card in affected:
                self.remove_card(card.id)
        else:
            now = int_time()
            for card in affected:
                card.did = DEFAULT_DECK_ID
                card.mod = now
                card.usn = -1

        for gone in doomed:
            del self.decks[gone]
            self.graves.append(Grave(gone, REM_DECK))
        self.rebuild_tree()
        logger.info(f"Deleted deck {deck_id} ({len(doomed)} deck(s), "
                     f"{len(affected)} card(s) {'deleted' if delete_cards else 'moved'})")
        return True

    # Entity removal
    ##########################################################################

    def remove_card(self, card_id: int, record_grave: bool = True,
                    remove_orphan_note: bool = True) -> Optional[Card]:
        """
        Drop a card and its review log. A note left without cards is dropped too.

        Generated cards never existed in the source package, so they leave no
        grave.

        Returns:
            The removed card, or None if it did not exist.
        """
        card = self.cards.pop(card_id, None)
        if card is None:
            return None
        self.revlog.pop(card_id, None)
        if card.origin == CardOrigin.GENERATED:
            record_grave = False
        if record_grave:
            self.graves.append(Grave(card_id, REM_CARD))
        if remove_orphan_note and not self.cards_of_note(card.nid):
            if self.notes.pop(card.nid, None) is not None and record_grave:
                self.graves.append(Grave(card.nid, REM_NOTE))
        return card

    def summary(self) -> Dict[str, int]:
        return {
            "decks": len(self.decks),
            "models": len(self.models),
            "notes": len(self.notes),
            "cards": len(self.cards),
            "revlog": sum(len(v) for v in self.revlog.values()),
            "media": len(self.media),
        }
