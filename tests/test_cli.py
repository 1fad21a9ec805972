#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Tests for the ankipkg command line.
"""

import io
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from unittest.mock import patch

# Add the src directory to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from ankipkg import config
from ankipkg.__main__ import main
from ankipkg.container import PackageVersion
from ankipkg.ids import reset_ids
from ankipkg.package import read_package, write_package
from sample_data import SEED, sample_collection


class TestCommandLine(unittest.TestCase):
    """info / convert / export-deck / render."""

    def setUp(self):
        """Write the sample collection to a temporary package file."""
        reset_ids(SEED)
        self.s = sample_collection()
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "sample.apkg")
        with open(self.path, "wb") as f:
            f.write(write_package(self.s.col, version=PackageVersion.LATEST))
        patcher = patch.object(config, "paths", [])
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self.tmp.cleanup()

    def run_main(self, *argv):
        out = io.StringIO()
        with redirect_stdout(out):
            code = main(list(argv))
        return code, out.getvalue()

    def test_info(self):
        """The summary lists counts and the deck tree."""
        code, out = self.run_main("info", self.path)
        self.assertEqual(code, 0)
        self.assertIn("version: LATEST", out)
        self.assertIn("  Child", out)
        self.assertIn("Parent [", out)

    def test_convert(self):
        """Converting writes a package of the requested version."""
        output = os.path.join(self.tmp.name, "out.apkg")
        code, _ = self.run_main("convert", self.path, output, "--version", "legacy2")
        self.assertEqual(code, 0)
        with open(output, "rb") as f:
            col = read_package(f.read())
        self.assertEqual(col.source_version, PackageVersion.LEGACY_2)
        self.assertEqual(set(col.cards), set(self.s.col.cards))

    def test_export_deck(self):
        """A single deck subtree can be written out."""
        output = os.path.join(self.tmp.name, "parent.apkg")
        code, _ = self.run_main("export-deck", self.path, output, "--deck", "parent")
        self.assertEqual(code, 0)
        with open(output, "rb") as f:
            col = read_package(f.read())
        self.assertEqual(col.card_count(), 3)
        self.assertIsNone(col.get_deck_by_name("Other"))

    def test_unknown_deck(self):
        """An unknown deck name fails."""
        output = os.path.join(self.tmp.name, "none.apkg")
        code, _ = self.run_main("export-deck", self.path, output, "--deck", "Nope")
        self.assertEqual(code, 1)
        self.assertFalse(os.path.exists(output))

    def test_render(self):
        """A card's front and back are printed."""
        code, out = self.run_main("render", self.path, "--card", str(self.s.q_card.id))
        self.assertEqual(code, 0)
        self.assertIn("What is 2+2?", out)
        self.assertIn("Parent::Child / Basic (Basic)", out)

    def test_errors_return_nonzero(self):
        """Missing or malformed input files are reported, not raised."""
        self.assertEqual(self.run_main("info", os.path.join(self.tmp.name, "missing.apkg"))[0], 1)
        bad = os.path.join(self.tmp.name, "bad.apkg")
        with open(bad, "wb") as f:
            f.write(b"not a zip")
        self.assertEqual(self.run_main("info", bad)[0], 1)


if __name__ == '__main__':
    unittest.main()
