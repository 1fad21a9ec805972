# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

# Field and deck name separators
FIELD_SEPARATOR = "\x1f"
DECK_SEPARATOR = "::"
# The modern decks table stores names with the field separator between segments
MODERN_DECK_SEPARATOR = "\x1f"

DEFAULT_DECK_ID = 1
DEFAULT_DECK_NAME = "Default"
DEFAULT_CONF_ID = 1

# Note type kinds
MODEL_STD = 0
MODEL_CLOZE = 1

# Card types
CARD_TYPE_NEW = 0
CARD_TYPE_LRN = 1
CARD_TYPE_REV = 2
CARD_TYPE_RELEARNING = 3

# Queue types
QUEUE_TYPE_MANUALLY_BURIED = -3
QUEUE_TYPE_SIBLING_BURIED = -2
QUEUE_TYPE_SUSPENDED = -1
QUEUE_TYPE_NEW = 0
QUEUE_TYPE_LRN = 1
QUEUE_TYPE_REV = 2
QUEUE_TYPE_DAY_LEARN_RELEARN = 3
QUEUE_TYPE_PREVIEW = 4

# Graves
REM_CARD = 0
REM_NOTE = 1
REM_DECK = 2

# Starting ease factor for new cards (permille)
STARTING_FACTOR = 2500

# Schema versions written to col.ver
SCHEMA_LEGACY = 11
SCHEMA_MODERN = 18

# Archive entry names
META_ENTRY = "meta"
MEDIA_ENTRY = "media"
LEGACY_1_DB = "collection.anki2"
LEGACY_2_DB = "collection.anki21"
LATEST_DB = "collection.anki21b"

ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"

GENERATED_TAG = "ankipkg-generated"

DEFAULT_LATEX_PRE = (
    "\\documentclass[12pt]{article}\n"
    "\\special{papersize=3in,5in}\n"
    "\\usepackage[utf8]{inputenc}\n"
    "\\usepackage{amssymb,amsmath}\n"
    "\\pagestyle{empty}\n"
    "\\setlength{\\parindent}{0in}\n"
    "\\begin{document}\n"
)
DEFAULT_LATEX_POST = "\\end{document}"

DEFAULT_CSS = """\
.card {
    font-family: arial;
    font-size: 20px;
    text-align: center;
    color: black;
    background-color: white;
}
"""
DEFAULT_CLOZE_CSS = DEFAULT_CSS + """\
.cloze {
    font-weight: bold;
    color: blue;
}
"""
