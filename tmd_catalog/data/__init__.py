"""Catalog persistence: entity store and directory reconciliation."""

from __future__ import annotations

from .entity_store import (
    Account,
    AccountEntity,
    AccountLink,
    AccountList,
    AccountNameHistory,
    EntityStore,
    ListEntity,
    create_catalog_engine,
    get_entity_store,
    open_entity_store,
)
from .name_audit import record_name_change_if_different, sync_account
from .reconciler import Reconciler

__all__ = [
    "Account",
    "AccountEntity",
    "AccountLink",
    "AccountList",
    "AccountNameHistory",
    "EntityStore",
    "ListEntity",
    "Reconciler",
    "create_catalog_engine",
    "get_entity_store",
    "open_entity_store",
    "record_name_change_if_different",
    "sync_account",
]
