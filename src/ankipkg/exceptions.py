# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html


class PackageError(Exception):
    """Base exception for package load/export failures."""
    def __init__(self, message, error_code=None):
        super().__init__(message)
        self.error_code = error_code

class ContainerError(PackageError):
    """The archive is not a valid zip container or misses a mandatory entry."""
    pass

class DecompressionError(PackageError):
    """A zstd stream could not be decoded."""
    pass

class SchemaError(PackageError):
    """The embedded database matches neither schema generation, or a required
    table/column is absent."""
    pass

class ReferentialError(PackageError):
    """A note or card references a model, deck or note that does not exist."""
    pass

class EncodingError(PackageError):
    """Protocol-buffer encoding or decoding failed (manifest or metadata)."""
    pass
