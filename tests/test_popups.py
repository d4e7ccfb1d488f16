"""
Tests for the popup directory.
"""

import json
import os
import tempfile
import unittest

from visitproof.geo import Coordinates
from visitproof.popups import InMemoryPopupDirectory, Popup


class TestPopupDirectory(unittest.TestCase):

    def write(self, content):
        fd, path = tempfile.mkstemp(suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        self.addCleanup(os.remove, path)
        return path

    def test_lookup(self):
        directory = InMemoryPopupDirectory([Popup("store-001", "Acme", Coordinates(37.5, 127.0))])
        self.assertEqual(directory.get("store-001").brand_name, "Acme")
        self.assertIsNone(directory.get("store-404"))

        directory.add(Popup("store-002", "Closed Co", Coordinates(0, 0), status="closed"))
        self.assertEqual(len(directory), 2)
        self.assertFalse(directory.get("store-002").is_active)

    def test_from_file(self):
        path = self.write(json.dumps([
            {"popup_id": "store-001", "brand_name": "Acme", "latitude": 37.5665, "longitude": 126.978},
            {"popup_id": "store-002", "brand_name": "Closed Co", "latitude": 0, "longitude": 0,
             "status": "closed"},
        ]))
        directory = InMemoryPopupDirectory.from_file(path)

        popup = directory.get("store-001")
        self.assertEqual(popup.location, Coordinates(37.5665, 126.978))
        self.assertTrue(popup.is_active)
        self.assertFalse(directory.get("store-002").is_active)

    def test_invalid_files(self):
        for content in (
            json.dumps({"popup_id": "store-001"}),
            json.dumps([{"popup_id": "store-001", "brand_name": "Acme"}]),
            json.dumps([{"popup_id": "store-001", "brand_name": "Acme", "latitude": "north", "longitude": 1}]),
            "not json",
        ):
            with self.subTest(content=content):
                with self.assertRaises(ValueError):
                    InMemoryPopupDirectory.from_file(self.write(content))

    def test_round_trip_dict(self):
        popup = Popup("store-001", "Acme", Coordinates(37.5, 127.0))
        data = popup.to_dict()
        self.assertEqual(data["location"], {"latitude": 37.5, "longitude": 127.0})
        self.assertEqual(data["status"], "active")


if __name__ == "__main__":
    unittest.main()
