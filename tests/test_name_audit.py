"""Tests for account name auditing and account sync."""
from __future__ import annotations

import logging
from unittest.mock import Mock

import pytest

from tmd_catalog.data.entity_store import Account, EntityStore
from tmd_catalog.data.name_audit import record_name_change_if_different, sync_account


# ==============================================================================
# record_name_change_if_different() Tests
# ==============================================================================

@pytest.mark.unit
def test_first_sighting_records_nothing():
    store = Mock()

    assert record_name_change_if_different(store, 5, "alice", "Alice", None) is False
    store.record_name_change.assert_not_called()


@pytest.mark.unit
def test_unchanged_names_record_nothing():
    store = Mock()
    previous = Account(id=5, screen_name="alice", name="Alice")

    assert record_name_change_if_different(store, 5, "alice", "Alice", previous) is False
    store.record_name_change.assert_not_called()


@pytest.mark.unit
@pytest.mark.parametrize(
    "new_screen_name, new_name",
    [("alice2", "Alice"), ("alice", "Alice B"), ("alice2", "Alice B")],
)
def test_any_name_difference_records_prior_values(new_screen_name, new_name):
    store = Mock()
    previous = Account(id=5, screen_name="alice", name="Alice")

    assert record_name_change_if_different(store, 5, new_screen_name, new_name, previous) is True
    store.record_name_change.assert_called_once_with(5, "alice", "Alice", conn=None)


@pytest.mark.unit
def test_count_changes_alone_are_not_name_changes():
    store = Mock()
    previous = Account(id=5, screen_name="alice", name="Alice", friends_count=1)

    assert record_name_change_if_different(store, 5, "alice", "Alice", previous) is False


@pytest.mark.integration
def test_sequential_changes_append_ordered_history(catalog_store: EntityStore):
    first = Account(id=5, screen_name="alice", name="Alice")
    second = Account(id=5, screen_name="alice2", name="Alice")
    third = Account(id=5, screen_name="alice3", name="Alice C")

    record_name_change_if_different(catalog_store, 5, second.screen_name, second.name, first)
    before = catalog_store.list_name_history(5)
    record_name_change_if_different(catalog_store, 5, third.screen_name, third.name, second)
    after = catalog_store.list_name_history(5)

    assert [(h.screen_name, h.name) for h in after] == [("alice", "Alice"), ("alice2", "Alice")]
    assert after[0].record_date < after[1].record_date
    # Earlier rows are never rewritten.
    assert after[0] == before[0]


@pytest.mark.integration
def test_rename_is_logged(catalog_store: EntityStore, caplog):
    previous = Account(id=5, screen_name="alice", name="Alice")

    with caplog.at_level(logging.INFO, logger="tmd_catalog.data.name_audit"):
        record_name_change_if_different(catalog_store, 5, "alice2", "Alice", previous)

    assert any(r.getMessage().startswith("RENAMED account 5") for r in caplog.records)


# ==============================================================================
# sync_account() Tests
# ==============================================================================

@pytest.mark.integration
class TestSyncAccount:
    def test_first_sync_creates_account_without_history(self, catalog_store: EntityStore):
        account = Account(id=5, screen_name="alice", name="Alice", friends_count=3)

        assert sync_account(catalog_store, account) == account
        assert catalog_store.get_account(5) == account
        assert catalog_store.list_name_history(5) == []

    def test_rename_records_history_then_overwrites(self, catalog_store: EntityStore):
        sync_account(catalog_store, Account(id=5, screen_name="alice", name="Alice"))

        renamed = Account(id=5, screen_name="alice_b", name="Alice B", protected=True, friends_count=8)
        sync_account(catalog_store, renamed)

        assert catalog_store.get_account(5) == renamed
        history = catalog_store.list_name_history(5)
        assert [(h.screen_name, h.name) for h in history] == [("alice", "Alice")]

    def test_metadata_only_change_updates_without_history(self, catalog_store: EntityStore):
        sync_account(catalog_store, Account(id=5, screen_name="alice", name="Alice"))

        sync_account(catalog_store, Account(id=5, screen_name="alice", name="Alice", friends_count=99))

        assert catalog_store.get_account(5).friends_count == 99
        assert catalog_store.list_name_history(5) == []
