"""Audit trail for account screen-name and display-name changes."""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.engine import Connection

from tmd_catalog.data.entity_store import Account, EntityStore

LOGGER = logging.getLogger(__name__)


def record_name_change_if_different(
    store: EntityStore,
    account_id: int,
    new_screen_name: str,
    new_name: str,
    previous: Optional[Account],
    *,
    conn: Optional[Connection] = None,
) -> bool:
    """Persist ``previous``'s names if the incoming ones differ.

    Must run before the account row is overwritten. Returns True when a
    history row was written.
    """
    if previous is None:
        return False
    if previous.screen_name == new_screen_name and previous.name == new_name:
        return False
    store.record_name_change(account_id, previous.screen_name, previous.name, conn=conn)
    LOGGER.info(
        "RENAMED account %s: @%s (%s) -> @%s (%s)",
        account_id,
        previous.screen_name,
        previous.name,
        new_screen_name,
        new_name,
    )
    return True


def sync_account(store: EntityStore, account: Account) -> Account:
    """Mirror freshly fetched account metadata into the store."""
    with store.transaction() as conn:
        previous = store.get_account(account.id, conn=conn)
        if previous is None:
            return store.create_account(account, conn=conn)
        record_name_change_if_different(
            store, account.id, account.screen_name, account.name, previous, conn=conn
        )
        if previous != account:
            store.update_account(account, conn=conn)
        return account
