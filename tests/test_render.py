#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tests for card rendering: cloze deletions, template substitution and media.
"""

import os
import sys
import unittest

# Add the src directory to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from ankipkg.exceptions import ReferentialError
from ankipkg.ids import reset_ids
from ankipkg.models import Card, CardKind, CardTemplate, NoteField, NoteType
from ankipkg.render import (
    add_cloze_hint,
    card_kind_label,
    cloze_numbers,
    make_cloze,
    media_references,
    render_card,
    render_cloze,
)
from sample_data import CLOZE_TEXT, SEED, add_note, sample_collection


class TestCloze(unittest.TestCase):
    """Cloze deletion rewriting."""

    def test_question_hides_active_deletion(self):
        """The active deletion becomes [...] and the others show their answer."""
        self.assertEqual(render_cloze(CLOZE_TEXT, 1, False, markup=False),
                         "The [...] is the powerhouse of the cell.")
        self.assertEqual(render_cloze(CLOZE_TEXT, 2, False, markup=False),
                         "The mitochondria is the [...] of the cell.")

    def test_answer_reveals_deletion(self):
        """The answer side shows every deletion's text."""
        self.assertEqual(render_cloze(CLOZE_TEXT, 1, True, markup=False),
                         "The mitochondria is the powerhouse of the cell.")

    def test_markup(self):
        """Active deletions are wrapped in cloze spans."""
        self.assertEqual(render_cloze("{{c1::Paris}}", 1, False),
                         '<span class="cloze cloze-hint">[...]</span>')
        self.assertEqual(render_cloze("{{c1::Paris}}", 1, True),
                         '<span class="cloze">Paris</span>')

    def test_hint_replaces_placeholder(self):
        """A hint is shown instead of [...]."""
        text = "Capital: {{c1::Paris::city}}"
        self.assertEqual(render_cloze(text, 1, False, markup=False), "Capital: city")
        self.assertEqual(render_cloze(text, 1, True, markup=False), "Capital: Paris")

    def test_helpers(self):
        """Building and inspecting cloze markup."""
        self.assertEqual(cloze_numbers(CLOZE_TEXT + " {{c1::again}}"), [1, 2])
        self.assertEqual(make_cloze("Paris", 3), "{{c3::Paris}}")
        self.assertEqual(add_cloze_hint("{{c3::Paris}}", "city"), "{{c3::Paris::city}}")
        self.assertEqual(card_kind_label(CardKind.BASIC_TYPE), "Basic (type in answer)")
        self.assertEqual(card_kind_label("whatever"), "Unknown")


class TestRenderCard(unittest.TestCase):
    """Rendering cards of the sample collection."""

    def setUp(self):
        """Build the sample collection with reproducible ids."""
        reset_ids(SEED)
        self.s = sample_collection()
        self.col = self.s.col

    def test_basic_card(self):
        """Front shows the question; back repeats it above the answer."""
        rendered = render_card(self.col, self.s.q_card)
        self.assertEqual(rendered.front, "What is 2+2?")
        self.assertEqual(rendered.back, "What is 2+2?\n\n<hr id=answer>\n\n4")
        self.assertEqual(rendered.deck_name, "Parent::Child")
        self.assertEqual(rendered.model_name, "Basic")
        self.assertEqual(rendered.fields, [("Front", "What is 2+2?"), ("Back", "4")])
        self.assertEqual(rendered.tags, ["math"])

    def test_cloze_cards(self):
        """Each cloze card hides its own deletion."""
        first, second = (render_card(self.col, c) for c in self.s.cloze_cards)
        self.assertEqual(first.front,
                         'The <span class="cloze cloze-hint">[...]</span> is the powerhouse of the cell.')
        self.assertIn('<span class="cloze">mitochondria</span>', first.back)
        self.assertIn("Biology", first.back)
        self.assertIn('<span class="cloze cloze-hint">[...]</span> of the cell.', second.front)
        self.assertEqual(first.kind, CardKind.CLOZE)

    def test_pending_field_values(self):
        """Explicit field values take precedence over the stored ones."""
        rendered = render_card(self.col, self.s.q_card, ["What is 3+3?", "6"])
        self.assertEqual(rendered.front, "What is 3+3?")
        self.assertTrue(rendered.back.endswith("6"))

    def test_media_is_inlined(self):
        """Images become data URLs; sounds become placeholders."""
        rendered = render_card(self.col, self.s.media_card)
        self.assertIn('src="data:image/png;base64,', rendered.front)
        self.assertIn('data-filename="b.mp3"', rendered.back)
        self.assertEqual(media_references(self.s.media_note.fields[0] + self.s.media_note.fields[1]),
                         ["a.png", "b.mp3"])

    def test_image_quoting_styles(self):
        """Double quoted, single quoted and bare src values are all found."""
        text = '<img src="a.png"><img alt="x" src=\'c d.jpg\'><img src=e.gif width=10>'
        self.assertEqual(media_references(text), ["a.png", "c d.jpg", "e.gif"])

        self.s.media_note.fields[0] = "<img src=a.png>"
        rendered = render_card(self.col, self.s.media_card)
        self.assertTrue(rendered.front.startswith('<img src="data:image/png;base64,'))
        self.assertTrue(rendered.front.endswith('">'))

    def test_missing_media_left_alone(self):
        """References to files not in the collection are kept as written."""
        del self.col.media["a.png"]
        rendered = render_card(self.col, self.s.media_card)
        self.assertEqual(rendered.front, '<img src="a.png">')

    def test_sections_filters_and_special_fields(self):
        """Conditional sections, text/type filters and special fields."""
        model = NoteType(
            id=77, name="Custom",
            fields=[NoteField("Front", 0), NoteField("Back", 1)],
            templates=[CardTemplate(
                "Forward", 0,
                qfmt="{{#Back}}has back{{/Back}}{{^Back}}no back{{/Back}}|{{text:Front}}",
                afmt="{{type:Back}}{{Deck}}/{{Subdeck}}/{{Card}}/{{Type}}/{{Tags}}/{{Missing}}",
            )],
        )
        self.col.models[model.id] = model
        _, (with_back,) = add_note(self.col, model, ["<b>bold</b>", "yes"], self.s.child.id,
                                   tags=["t1", "t2"])
        _, (without_back,) = add_note(self.col, model, ["plain", ""], self.s.child.id)

        rendered = render_card(self.col, with_back)
        self.assertEqual(rendered.front, "has back|bold")
        self.assertEqual(rendered.back, "Parent::Child/Child/Forward/Custom/t1 t2/")
        self.assertEqual(render_card(self.col, without_back).front, "no back|plain")

    def test_missing_note_type_falls_back_to_fields(self):
        """Without a note type the raw fields are shown."""
        del self.col.models[self.s.basic.id]
        rendered = render_card(self.col, self.s.q_card)
        self.assertEqual((rendered.front, rendered.back), ("What is 2+2?", "4"))
        self.assertEqual(rendered.model_name, "Unknown")

    def test_missing_note_is_an_error(self):
        """A card without its note cannot be rendered."""
        orphan = Card(id=5, nid=404, did=self.s.parent.id)
        with self.assertRaises(ReferentialError):
            render_card(self.col, orphan)


if __name__ == '__main__':
    unittest.main()
