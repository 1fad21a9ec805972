# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Lazy access to the protocol-buffer messages shipped with the anki package.

Importing the generated modules pulls in the protobuf runtime, so they are
loaded on first use and cached. Callers only see the message classes and the
decode/encode helpers, which translate protobuf failures into EncodingError.
"""

import functools
import importlib
import logging

from google.protobuf.message import DecodeError, EncodeError

from .exceptions import EncodingError

logger = logging.getLogger("ankipkg.protos")


@functools.lru_cache(maxsize=None)
def _module(name: str):
    logger.debug(f"Loading anki.{name}")
    return importlib.import_module(f"anki.{name}")


def package_metadata():
    return _module("import_export_pb2").PackageMetadata


def media_entries():
    return _module("import_export_pb2").MediaEntries


def notetype_config():
    return _module("notetypes_pb2").Notetype.Config


def field_config():
    return _module("notetypes_pb2").Notetype.Field.Config


def template_config():
    return _module("notetypes_pb2").Notetype.Template.Config


def deck_common():
    return _module("decks_pb2").Deck.Common


def deck_kind():
    return _module("decks_pb2").Deck.KindContainer


def deck_config():
    return _module("deck_config_pb2").DeckConfig.Config


def decode(message_cls, data: bytes, what: str = "message"):
    """Parse ``data`` into a new ``message_cls`` instance."""
    message = message_cls()
    if not data:
        return message
    try:
        message.ParseFromString(bytes(data))
    except DecodeError as e:
        raise EncodingError(f"Could not decode {what}: {e}") from e
    return message


def encode(message, what: str = "message") -> bytes:
    try:
        return message.SerializeToString()
    except (EncodeError, ValueError) as e:
        raise EncodingError(f"Could not encode {what}: {e}") from e
