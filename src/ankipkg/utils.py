# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

import html
import re
from typing import List

# Helper names were renamed from camelCase in Anki 2.1.50; accept both.
from anki import utils as _anki_utils  # type: ignore

from .consts import FIELD_SEPARATOR

if hasattr(_anki_utils, "int_time"):
    int_time = _anki_utils.int_time  # pylint: disable=invalid-name
else:
    int_time = _anki_utils.intTime  # type: ignore[attr-defined]

checksum = _anki_utils.checksum
guid64 = _anki_utils.guid64

__all__ = [
    "int_time",
    "checksum",
    "guid64",
    "split_fields",
    "join_fields",
    "split_tags",
    "join_tags",
    "strip_html",
    "field_checksum",
    "IMG_RE",
    "img_filename",
]

_re_comment = re.compile(r"(?s)<!--.*?-->")
_re_style = re.compile(r"(?si)<style.*?>.*?</style>")
_re_script = re.compile(r"(?si)<script.*?>.*?</script>")
_re_tag = re.compile(r"(?s)<.*?>")
# src may be double quoted, single quoted or bare
IMG_RE = re.compile(r"""(?is)<img[^>]*?\ssrc=(?:"([^"]*)"|'([^']*)'|([^\s>]+))[^>]*>""")


def img_filename(m) -> str:
    """The src value of an IMG_RE match, whichever quoting it used."""
    return m.group(1) or m.group(2) or m.group(3) or ""


def split_fields(flds: str) -> List[str]:
    return flds.split(FIELD_SEPARATOR)


def join_fields(fields: List[str]) -> str:
    return FIELD_SEPARATOR.join(fields)


def split_tags(tags: str) -> List[str]:
    return [t for t in tags.split() if t]


def join_tags(tags: List[str]) -> str:
    """Anki stores tags space separated with a leading and trailing space."""
    if not tags:
        return ""
    return " %s " % " ".join(tags)


def strip_html(txt: str) -> str:
    txt = _re_comment.sub("", txt)
    txt = _re_style.sub("", txt)
    txt = _re_script.sub("", txt)
    txt = _re_tag.sub("", txt)
    return html.unescape(txt).strip()


def strip_html_media(txt: str) -> str:
    """Strip HTML but keep image filenames, as the sort field cache does."""
    return strip_html(IMG_RE.sub(lambda m: " %s " % img_filename(m), txt))


def field_checksum(data: str) -> int:
    """First 8 hex digits of the SHA1 of the stripped field, as an int."""
    return int(checksum(strip_html_media(data).encode("utf-8"))[:8], 16)
