"""
Tests for ews_folders.py

Tests cover:
- discover(): empty folder skipping, path building, public root handling,
  traversal order and the depth guard
- summarize(): destination mapping, windowed counts and purging
- Discovery and summary against the mock EWS server
"""

import os
import sys
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import ews_folders
import ews_session
from ews_common import PUBLIC_ROOT_NAME, FolderTreeTooDeep, RemoteFolder
from ews_transport import ChildFolder

START = datetime(2023, 1, 1, tzinfo=timezone.utc)
END = datetime(2023, 12, 31, tzinfo=timezone.utc)


class FakeTreeSession:
    """Serves list_child_folders() from {folder_id: [ChildFolder, ...]}."""

    def __init__(self, tree, counts=None):
        self.tree = tree
        self.counts = counts or {}
        self.listed = []
        self.count_calls = []

    def list_child_folders(self, folder_id):
        self.listed.append(folder_id)
        return list(self.tree.get(folder_id, []))

    def count_items_in_range(self, folder_id, start, end, page_size=20):
        self.count_calls.append((folder_id, start, end, page_size))
        return self.counts.get(folder_id, 0)

    def get_folder_id(self, distinguished_id):
        return {"msgfolderroot": "root", "publicfoldersroot": "public"}[distinguished_id]


def _child(folder_id, name, total=0, children=0):
    return ChildFolder(folder_id=folder_id, display_name=name, total_count=total, child_folder_count=children)


def _root(public=False):
    return RemoteFolder(folder_id="root", folder_path="", is_public=public)


class TestDiscover:
    def test_skip_empty_keeps_only_non_empty_leaf(self):
        session = FakeTreeSession({"root": [_child("a", "Empty"), _child("b", "Inbox", total=4)]})
        inventory = []

        ews_folders.discover(session, _root(), inventory, skip_empty=True)

        assert [f.folder_path for f in inventory] == ["Inbox"]
        assert inventory[0].message_count == 4
        assert inventory[0].folder_id == "b"
        assert inventory[0].mapped_destination is None
        assert inventory[0].windowed_count is None

    def test_keep_empty_yields_both(self):
        session = FakeTreeSession({"root": [_child("a", "Empty"), _child("b", "Inbox", total=4)]})
        inventory = []

        ews_folders.discover(session, _root(), inventory, skip_empty=False)

        assert [f.folder_path for f in inventory] == ["Empty", "Inbox"]

    def test_empty_folder_with_subfolders_is_kept_and_descended(self):
        tree = {
            "root": [_child("a", "Archive", total=0, children=1)],
            "a": [_child("a1", "2019", total=10)],
        }
        inventory = []
        ews_folders.discover(FakeTreeSession(tree), _root(), inventory)

        assert [f.folder_path for f in inventory] == ["Archive", "Archive\\2019"]

    def test_skipped_folders_are_not_descended(self):
        session = FakeTreeSession({"root": [_child("a", "Empty")], "a": [_child("x", "Hidden", total=1)]})
        ews_folders.discover(session, _root(), [])
        assert session.listed == ["root"]

    def test_pre_order_traversal(self):
        tree = {
            "root": [_child("a", "A", total=1, children=2), _child("b", "B", total=1)],
            "a": [_child("a1", "A1", total=1, children=1), _child("a2", "A2", total=1)],
            "a1": [_child("a1x", "Deep", total=1)],
        }
        inventory = []
        ews_folders.discover(FakeTreeSession(tree), _root(), inventory)

        assert [f.folder_path for f in inventory] == ["A", "A\\A1", "A\\A1\\Deep", "A\\A2", "B"]

    def test_inventory_is_appended_to(self):
        existing = RemoteFolder(folder_id="z", folder_path="Existing")
        inventory = [existing]
        ews_folders.discover(FakeTreeSession({"root": [_child("a", "Inbox", total=1)]}), _root(), inventory)

        assert inventory[0] is existing
        assert len(inventory) == 2

    def test_public_root_excluded_and_prefix_stripped(self):
        tree = {
            "root": [_child("g", PUBLIC_ROOT_NAME, total=0, children=1)],
            "g": [_child("n", "News", total=2, children=1)],
            "n": [_child("n1", "Archive", total=5)],
        }
        inventory = []
        ews_folders.discover(FakeTreeSession(tree), _root(public=True), inventory)

        assert [f.folder_path for f in inventory] == ["News", "News\\Archive"]
        assert all(f.is_public for f in inventory)

    def test_sentinel_name_in_private_tree_is_kept(self):
        tree = {"root": [_child("g", PUBLIC_ROOT_NAME, total=1)]}
        inventory = []
        ews_folders.discover(FakeTreeSession(tree), _root(public=False), inventory)

        assert [f.folder_path for f in inventory] == [PUBLIC_ROOT_NAME]
        assert inventory[0].is_public is False

    def test_empty_public_root_is_skipped(self):
        tree = {"root": [_child("g", PUBLIC_ROOT_NAME)]}
        inventory = []
        ews_folders.discover(FakeTreeSession(tree), _root(public=True), inventory)
        assert inventory == []

    def test_depth_guard(self):
        tree = {"root": [_child("d1", "L1", total=1, children=1)]}
        for depth in range(1, 10):
            tree[f"d{depth}"] = [_child(f"d{depth + 1}", f"L{depth + 1}", total=1, children=1)]

        with pytest.raises(FolderTreeTooDeep):
            ews_folders.discover(FakeTreeSession(tree), _root(), [], max_depth=5)

    def test_depth_within_limit(self):
        tree = {"root": [_child("d1", "L1", total=1, children=1)], "d1": [_child("d2", "L2", total=1)]}
        inventory = []
        ews_folders.discover(FakeTreeSession(tree), _root(), inventory, max_depth=2)
        assert len(inventory) == 2

    def test_debug_logging(self):
        messages = []
        session = FakeTreeSession({"root": [_child("a", "Empty"), _child("b", "Inbox", total=4)]})
        ews_folders.discover(session, _root(), [], log_fn=messages.append)

        assert any("Skipping folder Empty" in m for m in messages)
        assert any("Found folder Inbox, 4 messages" in m for m in messages)

    def test_remote_errors_propagate(self):
        session = MagicMock()
        session.list_child_folders.side_effect = RuntimeError("boom")
        with pytest.raises(RuntimeError):
            ews_folders.discover(session, _root(), [])


class TestRootFolder:
    def test_mailbox_root(self):
        root = ews_folders.root_folder(FakeTreeSession({}))
        assert root.folder_id == "root"
        assert root.folder_path == ""
        assert root.is_public is False

    def test_public_root(self):
        root = ews_folders.root_folder(FakeTreeSession({}), public=True)
        assert root.folder_id == "public"
        assert root.is_public is True


class TestSummarize:
    def _inventory(self):
        return [
            RemoteFolder(folder_id="i", folder_path="Inbox", message_count=10),
            RemoteFolder(folder_id="c", folder_path="Calendar", message_count=3),
            RemoteFolder(folder_id="s", folder_path="Sent Items", message_count=7),
        ]

    def _resolver(self, path, provider):
        return {"Inbox": "INBOX", "Sent Items": "Sent"}.get(path, "")

    def test_purges_unmapped_folders(self):
        session = FakeTreeSession({}, counts={"i": 4, "s": 2})
        inventory = self._inventory()

        ignored = ews_folders.summarize(session, inventory, START, END, resolver=self._resolver)

        assert [f.folder_path for f in inventory] == ["Inbox", "Sent Items"]
        assert [f.windowed_count for f in inventory] == [4, 2]
        assert [f.mapped_destination for f in inventory] == ["INBOX", "Sent"]
        assert [f.folder_path for f in ignored] == ["Calendar"]

    def test_count_query_uses_window_and_page_size(self):
        session = FakeTreeSession({}, counts={"i": 4, "s": 2})
        ews_folders.summarize(session, self._inventory(), START, END, resolver=self._resolver)

        assert session.count_calls == [("i", START, END, 20), ("s", START, END, 20)]

    def test_keep_ignored_when_not_purging(self):
        session = FakeTreeSession({}, counts={"i": 4})
        inventory = self._inventory()

        ignored = ews_folders.summarize(session, inventory, START, END, purge_ignored=False, resolver=self._resolver)

        assert len(inventory) == 3
        assert ignored[0].mapped_destination is None
        assert ignored[0].windowed_count is None

    def test_resolver_receives_provider_tag(self):
        calls = []

        def resolver(path, provider):
            calls.append((path, provider))
            return path

        ews_folders.summarize(FakeTreeSession({}), self._inventory(), START, END, resolver=resolver)
        assert calls[0] == ("Inbox", "exchange")

    def test_whitespace_destination_is_blank(self):
        inventory = self._inventory()
        ews_folders.summarize(FakeTreeSession({}), inventory, START, END, resolver=lambda p, t: "   ")
        assert inventory == []

    def test_none_destination_is_blank(self):
        inventory = self._inventory()
        ews_folders.summarize(FakeTreeSession({}), inventory, START, END, resolver=lambda p, t: None)
        assert inventory == []

    def test_default_resolver_ignores_calendar(self):
        inventory = self._inventory()
        ews_folders.summarize(FakeTreeSession({}), inventory, START, END)

        assert [f.mapped_destination for f in inventory] == ["INBOX", "Sent Items"]

    def test_destination_set_once(self):
        inventory = self._inventory()
        ews_folders.summarize(FakeTreeSession({}), inventory, START, END, resolver=self._resolver)
        with pytest.raises(ValueError):
            inventory[0].assign_destination("Elsewhere")


class TestAgainstMockServer:
    DATA = {
        "folders": {
            "Inbox": {
                "messages": ["2023-03-01T10:00:00Z", "2022-03-01T10:00:00Z"],
                "folders": {"Projects": {"messages": ["2023-04-01T10:00:00Z"]}, "Old": {}},
            },
            "Calendar": {"messages": ["2023-05-01T10:00:00Z"]},
            "Drafts": {},
        },
        "public": {
            PUBLIC_ROOT_NAME: {
                "folders": {"Announcements": {"messages": ["2023-06-01T10:00:00Z", "2023-07-01T10:00:00Z"]}}
            }
        },
    }

    def test_discover_and_summarize(self, mock_ews_server):
        _, host = mock_ews_server(self.DATA)
        session = ews_session.connect(host, "user", "pw", log_fn=lambda _m: None)

        inventory = []
        ews_folders.discover(session, ews_folders.root_folder(session), inventory)
        ews_folders.discover(session, ews_folders.root_folder(session, public=True), inventory)

        assert [f.folder_path for f in inventory] == ["Inbox", "Inbox\\Projects", "Calendar", "Announcements"]

        ignored = ews_folders.summarize(session, inventory, START, END)

        assert [f.folder_path for f in ignored] == ["Calendar"]
        summary = {f.folder_path: (f.mapped_destination, f.windowed_count) for f in inventory}
        assert summary == {
            "Inbox": ("INBOX", 1),
            "Inbox\\Projects": ("INBOX/Projects", 1),
            "Announcements": ("Announcements", 2),
        }
