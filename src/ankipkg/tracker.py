# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Session-level mutation tracking: field edits, card deletion and generation,
undo/redo.

What a card may undergo depends on its origin. Imported cards are only ever
flagged as deleted (and can be restored); the flag turns into an exclusion at
export time. Generated cards are removed outright and cannot be restored
except through undo.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from .collection import Collection, basic_note_type, cloze_note_type
from .consts import GENERATED_TAG, QUEUE_TYPE_NEW
from .models import (
    Card,
    CardKind,
    CardOrigin,
    Note,
    NoteType,
    OriginCapabilities,
    ReviewLogEntry,
    Scheduling,
    determine_card_kind,
)
from .utils import guid64, int_time

logger = logging.getLogger("ankipkg.tracker")

ADD_CARD = "add-card"
DELETE_CARD = "delete-card"


@dataclass
class TrackedAction:
    type: str
    card: Card
    note: Optional[Note] = None
    revlog: List[ReviewLogEntry] = field(default_factory=list)
    soft: bool = False


@dataclass
class CardState:
    card_id: int
    origin: CardOrigin
    capabilities: OriginCapabilities
    is_edited: bool
    is_deleted: bool
    fields: List[str]


class MutationTracker:
    """Records edits, deletions and generated cards against one collection."""

    def __init__(self, collection: Collection):
        self.collection = collection
        self._original_fields: Dict[int, List[str]] = {
            nid: list(note.fields) for nid, note in collection.notes.items()
        }
        self._edits: Dict[int, List[str]] = {}
        self.generated_card_ids: Set[int] = set()
        self.generated_note_ids: Set[int] = set()
        self._undo: List[TrackedAction] = []
        self._redo: List[TrackedAction] = []

    # Field edits
    ##########################################################################

    def _original(self, note_id: int) -> Optional[List[str]]:
        if note_id in self._original_fields:
            return self._original_fields[note_id]
        note = self.collection.get_note(note_id)
        return note.fields if note else None

    def update_fields(self, note_id: int, values: List[str]) -> bool:
        """
        Record new field values for a note.

        An edit equal to the original values is dropped, so "edited" is
        always derived from the stored values. Every card of the note sees
        the edit.

        Returns:
            False if the note does not exist or the value count is wrong.
        """
        original = self._original(note_id)
        if original is None or len(values) != len(original):
            return False
        values = list(values)
        if values == original:
            self._edits.pop(note_id, None)
        else:
            self._edits[note_id] = values
        return True

    def is_edited(self, note_id: int) -> bool:
        return note_id in self._edits

    def effective_fields(self, note_id: int) -> Optional[List[str]]:
        if note_id in self._edits:
            return list(self._edits[note_id])
        original = self._original(note_id)
        return list(original) if original is not None else None

    def restore_fields(self, note_id: int) -> bool:
        return self._edits.pop(note_id, None) is not None

    def edited_notes(self) -> Dict[int, List[str]]:
        return {nid: list(values) for nid, values in self._edits.items()}

    # Deletion
    ##########################################################################

    def delete_card(self, card_id: int) -> bool:
        card = self.collection.get_card(card_id)
        if card is None or card.is_deleted:
            return False

        if card.origin.capabilities.can_hard_delete:
            action = TrackedAction(DELETE_CARD, card)
        else:
            action = TrackedAction(DELETE_CARD, card, soft=True)
        self._apply(action)
        self._push(action)
        logger.debug(f"Deleted {card.origin.value} card {card_id}"
                     f"{' (soft)' if action.soft else ''}")
        return True

    def restore_card(self, card_id: int) -> bool:
        """Clear the deleted flag of an imported card."""
        card = self.collection.get_card(card_id)
        if card is None or not card.is_deleted or not card.origin.capabilities.can_restore:
            return False
        card.is_deleted = False
        return True

    def excluded_card_ids(self) -> Set[int]:
        return {c.id for c in self.collection.cards.values() if c.is_deleted}

    def delete_deck(self, deck_id: int, delete_cards: bool = False,
                    delete_subdecks: bool = False) -> bool:
        """
        Delete a deck via Collection.delete_deck and drop the bookkeeping of
        any cards removed with it. Those removals cannot be undone.
        """
        col = self.collection
        before = set(col.cards)
        if not col.delete_deck(deck_id, delete_cards, delete_subdecks):
            return False
        self._forget(before - set(col.cards))
        return True

    def _forget(self, card_ids: Set[int]):
        col = self.collection
        self.generated_card_ids -= card_ids
        self.generated_note_ids &= set(col.notes)
        for nid in [nid for nid in self._edits if nid not in col.notes]:
            del self._edits[nid]

        def live(action: TrackedAction) -> bool:
            return action.card.id not in card_ids and action.card.did in col.decks

        dropped = len(self._undo) + len(self._redo)
        self._undo = [a for a in self._undo if live(a)]
        self._redo = [a for a in self._redo if live(a)]
        dropped -= len(self._undo) + len(self._redo)
        if card_ids or dropped:
            logger.info(f"Forgot {len(card_ids)} removed card(s) and {dropped} undo/redo action(s)")

    # Generation
    ##########################################################################

    def _model_for(self, kind: CardKind, source: Optional[Card]) -> NoteType:
        col = self.collection
        if source is not None:
            source_note = col.get_note(source.nid)
            model = col.get_model(source_note.mid) if source_note else None
            if model is not None and determine_card_kind(model) == kind:
                return model
        for model in col.models.values():
            if determine_card_kind(model) == kind:
                return model
        if kind != CardKind.CLOZE:
            for model in col.models.values():
                if determine_card_kind(model) == CardKind.BASIC:
                    return model

        model = cloze_note_type(col.new_id(col.models)) if kind == CardKind.CLOZE \
            else basic_note_type(col.new_id(col.models))
        col.models[model.id] = model
        logger.info(f"Added stock note type {model.name!r} ({model.id})")
        return model

    def _next_position(self) -> int:
        dues = [c.scheduling.due for c in self.collection.cards.values()
                if c.scheduling.queue == QUEUE_TYPE_NEW]
        return max(dues, default=0) + 1

    def _copy_revlog(self, source_id: int, card_id: int) -> List[ReviewLogEntry]:
        taken = {e.id for entries in self.collection.revlog.values() for e in entries}
        copied = []
        for entry in self.collection.revlog.get(source_id, []):
            new_id = entry.id
            while new_id in taken:
                new_id += 1
            taken.add(new_id)
            copied.append(ReviewLogEntry(
                id=new_id, cid=card_id, usn=-1, ease=entry.ease, ivl=entry.ivl,
                last_ivl=entry.last_ivl, factor=entry.factor, time=entry.time, type=entry.type,
            ))
        return copied

    def add_card(self, deck_id: int, fields: List[str], kind="basic",
                 tags: Optional[List[str]] = None, source_card_id: Optional[int] = None,
                 inherit_scheduling: bool = False) -> Optional[Card]:
        """
        Create a generated note with one card.

        Args:
            deck_id: deck for the new card
            fields: field values, padded or cut to the note type's field count
            kind: card kind, selects the note type
            tags: tags for the new note
            source_card_id: card the new one is derived from
            inherit_scheduling: copy the source card's scheduling and review
                log instead of starting as a new card

        Returns:
            The new card, or None if the deck or source card does not exist
            or the kind is unknown.
        """
        col = self.collection
        if deck_id not in col.decks:
            return None
        source = None
        if source_card_id is not None:
            source = col.get_card(source_card_id)
            if source is None:
                return None

        try:
            kind = CardKind(kind)
        except ValueError:
            logger.warning(f"Cannot generate a card of unknown kind {kind!r}")
            return None
        model = self._model_for(kind, source)
        count = len(model.fields)
        values = (list(fields) + [""] * count)[:count]
        now = int_time()

        note_tags = list(tags or [])
        if GENERATED_TAG not in note_tags:
            note_tags.append(GENERATED_TAG)
        note = Note(id=col.new_id(col.notes), mid=model.id, fields=values, tags=note_tags,
                    guid=guid64(), mod=now, usn=-1)
        card = Card(id=col.new_id(col.cards), nid=note.id, did=deck_id, ord=0,
                    kind=determine_card_kind(model), mod=now, usn=-1,
                    origin=CardOrigin.GENERATED)

        revlog = []
        if inherit_scheduling and source is not None:
            card.scheduling = copy.copy(source.scheduling)
            revlog = self._copy_revlog(source.id, card.id)
        else:
            card.scheduling = Scheduling(due=self._next_position())

        action = TrackedAction(ADD_CARD, card, note, revlog)
        self._apply(action)
        self._push(action)
        if inherit_scheduling and source is not None:
            logger.info(f"Generated card {card.id} in deck {deck_id}, inheriting "
                        f"scheduling and {len(revlog)} review(s) from card {source.id}")
        else:
            logger.info(f"Generated card {card.id} (note {note.id}) in deck {deck_id}")
        return card

    # Undo / redo
    ##########################################################################

    def _push(self, action: TrackedAction):
        self._undo.append(action)
        self._redo.clear()

    def _insert(self, action: TrackedAction):
        col = self.collection
        if action.note is not None:
            col.notes[action.note.id] = action.note
            self.generated_note_ids.add(action.note.id)
        col.cards[action.card.id] = action.card
        if action.revlog:
            col.revlog[action.card.id] = list(action.revlog)
        self.generated_card_ids.add(action.card.id)

    def _remove(self, action: TrackedAction):
        col = self.collection
        card = action.card
        col.cards.pop(card.id, None)
        action.revlog = col.revlog.pop(card.id, [])
        self.generated_card_ids.discard(card.id)
        action.note = None
        if not col.cards_of_note(card.nid):
            action.note = col.notes.pop(card.nid, None)
            self.generated_note_ids.discard(card.nid)

    def _apply(self, action: TrackedAction):
        if action.type == ADD_CARD:
            self._insert(action)
        elif action.soft:
            action.card.is_deleted = True
        else:
            self._remove(action)

    def _revert(self, action: TrackedAction):
        if action.type == ADD_CARD:
            self._remove(action)
        elif action.soft:
            action.card.is_deleted = False
        else:
            self._insert(action)

    def can_undo(self) -> bool:
        return bool(self._undo)

    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo(self) -> Optional[str]:
        """Revert the last action. Returns its type, or None if there was nothing to undo."""
        if not self._undo:
            return None
        action = self._undo.pop()
        self._revert(action)
        self._redo.append(action)
        return action.type

    def redo(self) -> Optional[str]:
        if not self._redo:
            return None
        action = self._redo.pop()
        self._apply(action)
        self._undo.append(action)
        return action.type

    # Queries
    ##########################################################################

    def is_generated(self, card_id: int) -> bool:
        return card_id in self.generated_card_ids

    def card_state(self, card_id: int) -> Optional[CardState]:
        card = self.collection.get_card(card_id)
        if card is None:
            return None
        return CardState(
            card_id=card.id,
            origin=card.origin,
            capabilities=card.origin.capabilities,
            is_edited=self.is_edited(card.nid),
            is_deleted=card.is_deleted,
            fields=self.effective_fields(card.nid) or [],
        )
