# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Card rendering.

A small subset of Anki's template language is supported: field
substitution, conditional sections, the ``text``, ``type`` and ``cloze``
filters, and ``{{FrontSide}}``. Cloze deletions follow Anki's markup
(``{{c1::answer}}`` / ``{{c1::answer::hint}}``). Media references in the
output are resolved against the collection's media map.
"""

import base64
import html
import logging
import mimetypes
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .collection import Collection
from .exceptions import ReferentialError
from .models import Card, CardKind, CardTemplate
from .utils import IMG_RE, img_filename, strip_html

logger = logging.getLogger("ankipkg.render")

CLOZE_RE = re.compile(r"\{\{c(\d+)::(.+?)(?:::(.+?))?\}\}", re.S)
CLOZE_NUMBER_RE = re.compile(r"\{\{c(\d+)::")
SECTION_RE = re.compile(r"\{\{([#^])\s*([^}]+?)\s*\}\}(.*?)\{\{/\s*\2\s*\}\}", re.S | re.I)
PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")
SOUND_RE = re.compile(r"\[sound:([^\]]+)\]", re.I)

HINT_PLACEHOLDER = "[...]"

CARD_KIND_LABELS = {
    CardKind.BASIC: "Basic",
    CardKind.BASIC_REVERSED: "Basic (and reversed)",
    CardKind.BASIC_OPTIONAL_REVERSED: "Basic (optional reversed)",
    CardKind.BASIC_TYPE: "Basic (type in answer)",
    CardKind.CLOZE: "Cloze",
}


@dataclass
class RenderedCard:
    card_id: int
    note_id: int
    deck_id: int
    deck_name: str
    model_name: str
    kind: CardKind
    front: str
    back: str
    css: str = ""
    fields: List[Tuple[str, str]] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)


# Cloze helpers
##########################################################################


def render_cloze(text: str, ordinal: int, show_answer: bool, markup: bool = True) -> str:
    """
    Rewrite the cloze deletions of ``text`` for one card.

    Deletions numbered ``ordinal`` are hidden on the question side (hint or
    ``[...]``) and highlighted on the answer side; other numbers show their
    answer as plain text.
    """
    def repl(m):
        if int(m.group(1)) != ordinal:
            return m.group(2)
        if show_answer:
            content, css_class = m.group(2), "cloze"
        else:
            content, css_class = m.group(3) or HINT_PLACEHOLDER, "cloze cloze-hint"
        if not markup:
            return content
        return f'<span class="{css_class}">{content}</span>'

    return CLOZE_RE.sub(repl, text)


def cloze_numbers(text: str) -> List[int]:
    return sorted({int(n) for n in CLOZE_NUMBER_RE.findall(text)})


def make_cloze(text: str, number: int) -> str:
    return f"{{{{c{number}::{text}}}}}"


def add_cloze_hint(cloze: str, hint: str) -> str:
    """Turn ``{{c1::answer}}`` into ``{{c1::answer::hint}}``."""
    if not cloze.endswith("}}"):
        return cloze
    return f"{cloze[:-2]}::{hint}}}}}"


def card_kind_label(kind) -> str:
    try:
        return CARD_KIND_LABELS[CardKind(kind)]
    except ValueError:
        return "Unknown"


# Media
##########################################################################


def media_references(text: str) -> List[str]:
    """Filenames referenced by ``<img src>`` tags and ``[sound:]`` tags, in order."""
    found = []
    images = [img_filename(m) for m in IMG_RE.finditer(text)]
    for filename in images + SOUND_RE.findall(text):
        if filename and filename not in found:
            found.append(filename)
    return found


def _data_url(filename: str, data: bytes) -> str:
    mime = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def resolve_media(text: str, collection: Collection) -> str:
    """Inline referenced images as data URLs and turn sound tags into placeholders."""
    def img(m):
        name = img_filename(m)
        media_file = collection.media.get(name)
        if media_file is None:
            return m.group(0)
        group = next(i for i in (1, 2, 3) if m.group(i) is not None)
        start, end = m.span(group)
        url = _data_url(name, media_file.data)
        if group == 3:
            url = f'"{url}"'
        return m.string[m.start():start] + url + m.string[end:m.end()]

    def sound(m):
        if m.group(1) not in collection.media:
            return m.group(0)
        name = html.escape(m.group(1))
        return f'<span class="sound-reference" data-filename="{name}">{name}</span>'

    return SOUND_RE.sub(sound, IMG_RE.sub(img, text))


# Templates
##########################################################################


class _Context:
    def __init__(self, values: Dict[str, str], special: Dict[str, str], cloze_ordinal: Optional[int]):
        self.values = {k.lower(): v for k, v in values.items()}
        self.special = {k.lower(): v for k, v in special.items()}
        self.cloze_ordinal = cloze_ordinal

    def lookup(self, name: str) -> Optional[str]:
        key = name.strip().lower()
        if key in self.values:
            return self.values[key]
        return self.special.get(key)


def _render_sections(template: str, ctx: _Context) -> str:
    def repl(m):
        name = m.group(2).split(":")[-1]
        non_empty = bool((ctx.lookup(name) or "").strip())
        show = non_empty if m.group(1) == "#" else not non_empty
        return m.group(3) if show else ""

    # Repeat until stable to handle nested sections
    previous = None
    while previous != template:
        previous = template
        template = SECTION_RE.sub(repl, template)
    return template


def render_template(template: str, ctx: _Context, show_answer: bool, front_side: str = "") -> str:
    """Expand one side of a card template."""
    text = _render_sections(template, ctx)

    def repl(m):
        inner = m.group(1).strip()
        if inner[:1] in "#^/":
            return ""
        parts = inner.split(":")
        name, filters = parts[-1].strip(), [p.strip().lower() for p in parts[:-1]]
        if name.lower() == "frontside" and not filters:
            return front_side if show_answer else ""
        if "type" in filters:
            return ""
        value = ctx.lookup(name)
        if value is None:
            return ""
        if "cloze" in filters:
            if ctx.cloze_ordinal is None:
                return ""
            value = render_cloze(value, ctx.cloze_ordinal, show_answer)
        if "text" in filters:
            value = strip_html(value)
        return value

    return PLACEHOLDER_RE.sub(repl, text)


def _fallback(values: List[str]) -> Tuple[str, str]:
    front = values[0] if values else ""
    back = values[1] if len(values) > 1 else front
    return front, back


def _render_cloze_card(template: Optional[CardTemplate], ctx: _Context,
                       values: List[str]) -> Tuple[str, str]:
    if template is not None and "cloze:" in template.qfmt.lower():
        front = render_template(template.qfmt, ctx, False)
        back = render_template(template.afmt, ctx, True, front)
        return front, back

    # No cloze filter in the template: the first field holds the deletions
    primary = values[0] if values else ""
    front = render_cloze(primary, ctx.cloze_ordinal, False)
    back = render_cloze(primary, ctx.cloze_ordinal, True)
    if len(values) > 1 and values[1].strip():
        back += f'<hr><div class="extra">{values[1]}</div>'
    return front, back


def render_card(collection: Collection, card: Card, fields: Optional[List[str]] = None) -> RenderedCard:
    """
    Render the question and answer of ``card``.

    Args:
        collection: collection owning the card
        card: the card to render
        fields: field values to use instead of the note's stored ones
            (for example pending edits)

    Raises:
        ReferentialError: the card's note does not exist
    """
    note = collection.get_note(card.nid)
    if note is None:
        raise ReferentialError(f"Note {card.nid} not found for card {card.id}")
    values = list(fields if fields is not None else note.fields)
    model = collection.get_model(note.mid)
    deck = collection.get_deck(card.did)

    if model is None:
        logger.warning(f"Note type {note.mid} not found for card {card.id}, showing raw fields")
        front, back = _fallback(values)
        named = [(f"Field {i + 1}", v) for i, v in enumerate(values)]
        css, model_name = "", "Unknown"
    else:
        names = model.field_names()
        named = [(name, values[i] if i < len(values) else "") for i, name in enumerate(names)]
        template = model.template_for(card.ord)
        special = {
            "Tags": " ".join(note.tags),
            "Type": model.name,
            "Deck": deck.name if deck else "",
            "Subdeck": deck.short_name if deck else "",
            "Card": template.name if template else "",
        }
        cloze_ordinal = card.ord + 1 if model.is_cloze else None
        ctx = _Context(dict(named), special, cloze_ordinal)
        if model.is_cloze:
            front, back = _render_cloze_card(template, ctx, values)
        elif template is None:
            logger.warning(f"No template {card.ord} on note type {model.id} for card {card.id}")
            front, back = _fallback(values)
        else:
            front = render_template(template.qfmt, ctx, False)
            back = render_template(template.afmt, ctx, True, front)
        css, model_name = model.css, model.name

    return RenderedCard(
        card_id=card.id,
        note_id=card.nid,
        deck_id=card.did,
        deck_name=deck.name if deck else "Unknown",
        model_name=model_name,
        kind=card.kind,
        front=resolve_media(front, collection),
        back=resolve_media(back, collection),
        css=css,
        fields=named,
        tags=list(note.tags),
    )
