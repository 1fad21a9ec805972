# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

from .collection import Collection, DeckNode
from .container import PackageVersion
from .exceptions import (
    ContainerError,
    DecompressionError,
    EncodingError,
    PackageError,
    ReferentialError,
    SchemaError,
)
from .ids import IdGenerator, id_generator, reset_ids
from .models import CardKind, CardOrigin, ModelKind
from .package import (
    Workspace,
    export_collection,
    parse_archive,
    read_package,
    write_package,
)
from .render import RenderedCard, render_card, render_cloze
from .tracker import MutationTracker

__version__ = "0.3.0"


def _get_version():
    return __version__
