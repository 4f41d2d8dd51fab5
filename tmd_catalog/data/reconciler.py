"""Directory-identity reconciliation for account and list download roots.

Users rename and move download directories behind the downloader's back.
The engine decides whether a candidate directory is a tracked root that
moved (update the stored path) or a genuinely new one (insert a row), so a
moved directory does not trigger a full re-download.

Evidence used:

* accounts: the marker file (``.user``), first inside the candidate
  directory, then inside each directory already on record;
* lists: bare existence of the candidate directory, plus a case-insensitive
  name check on the create path only.

When several stored rows qualify, the first row the store returns wins.
That pick is arbitrary; a marker carrying a persisted id would be needed to
do better.
"""
from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Hashable, Iterator, Optional

from sqlalchemy.engine import Connection

from tmd_catalog.config import MARKER_FILE_NAME
from tmd_catalog.data.entity_store import (
    AccountEntity,
    AccountLink,
    EntityStore,
    ListEntity,
)
from tmd_catalog.data.paths import PathLike, canonicalize_dir, directory_exists, has_marker

LOGGER = logging.getLogger(__name__)


def _same_dir(left: str, right: str) -> bool:
    return left.lower() == right.lower()


class _KeyedLocks:
    """One lock per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


class Reconciler:
    """Resolve (owner id, candidate directory) pairs to exactly one stored row.

    Calls for the same owner are serialized by an in-process lock and each
    call runs inside one store transaction. Share a single instance across
    threads; separate processes are not coordinated.
    """

    def __init__(self, store: EntityStore, *, marker_name: str = MARKER_FILE_NAME) -> None:
        self._store = store
        self._marker_name = marker_name
        self._locks = _KeyedLocks()

    @contextmanager
    def _owner_scope(self, kind: str, owner_id: int) -> Iterator[Connection]:
        with self._locks.hold((kind, owner_id)):
            with self._store.transaction() as conn:
                yield conn

    # ------------------------------------------------------------------
    # Account entities
    # ------------------------------------------------------------------
    def locate_or_reconcile_account_entity(
        self,
        account_id: int,
        candidate_dir: PathLike,
        name: Optional[str] = None,
    ) -> AccountEntity:
        """Find the entity for ``account_id`` living at ``candidate_dir``.

        A relocated entity keeps its stored name. If nothing matches, a new
        entity is inserted, named ``name`` or else after the directory.
        """
        parent_dir = canonicalize_dir(candidate_dir)
        with self._owner_scope("account", account_id) as conn:
            entity = self._reconcile_account_entity(conn, account_id, parent_dir, rename_to=None)
            if entity is not None:
                return entity
            if name is None:
                name = os.path.basename(parent_dir)
            return self._insert_account_entity(
                conn, AccountEntity(id=None, account_id=account_id, name=name, parent_dir=parent_dir)
            )

    def create_or_reconcile_account_entity(self, candidate: AccountEntity) -> AccountEntity:
        """Like the locate path, but a relocated entity also takes ``candidate.name``
        and a fresh insert persists the whole candidate."""
        parent_dir = canonicalize_dir(candidate.parent_dir)
        candidate = replace(candidate, parent_dir=parent_dir)
        with self._owner_scope("account", candidate.account_id) as conn:
            entity = self._reconcile_account_entity(
                conn, candidate.account_id, parent_dir, rename_to=candidate.name
            )
            if entity is not None:
                return entity
            return self._insert_account_entity(conn, candidate)

    def _reconcile_account_entity(
        self,
        conn: Connection,
        account_id: int,
        parent_dir: str,
        *,
        rename_to: Optional[str],
    ) -> Optional[AccountEntity]:
        store = self._store

        # Marker already inside the candidate: some row of ours moved here.
        if has_marker(parent_dir, self._marker_name):
            existing = store.list_account_entities(account_id, conn=conn)
            if existing:
                chosen = next((e for e in existing if _same_dir(e.parent_dir, parent_dir)), existing[0])
                return self._relocate_account_entity(conn, chosen, parent_dir, rename_to)

        exact = store.find_account_entity(account_id, parent_dir, conn=conn)
        if exact is not None:
            LOGGER.debug("Account %s entity %s unchanged at '%s'", account_id, exact.id, parent_dir)
            return exact

        # A row whose old directory still carries the marker is taken as the
        # one that moved, even if the old directory was never abandoned.
        for entity in store.list_account_entities(account_id, conn=conn):
            if has_marker(entity.parent_dir, self._marker_name):
                return self._relocate_account_entity(conn, entity, parent_dir, rename_to)
        return None

    def _relocate_account_entity(
        self,
        conn: Connection,
        entity: AccountEntity,
        parent_dir: str,
        rename_to: Optional[str],
    ) -> AccountEntity:
        if entity.parent_dir == parent_dir and rename_to in (None, entity.name):
            return entity
        self._store.update_account_entity_location(entity.id, parent_dir, rename_to, conn=conn)
        if not _same_dir(entity.parent_dir, parent_dir):
            LOGGER.info(
                "RELOCATED account %s entity %s: '%s' -> '%s'",
                entity.account_id,
                entity.id,
                entity.parent_dir,
                parent_dir,
            )
        if rename_to is None:
            return replace(entity, parent_dir=parent_dir)
        return replace(entity, parent_dir=parent_dir, name=rename_to)

    def _insert_account_entity(self, conn: Connection, entity: AccountEntity) -> AccountEntity:
        created = self._store.create_account_entity(entity, conn=conn)
        LOGGER.info(
            "NEW account %s entity %s at '%s'", created.account_id, created.id, created.parent_dir
        )
        return created

    # ------------------------------------------------------------------
    # List entities
    # ------------------------------------------------------------------
    def locate_or_reconcile_list_entity(
        self, list_id: int, candidate_dir: PathLike
    ) -> Optional[ListEntity]:
        """Find the entity for ``list_id`` at ``candidate_dir``; never inserts.

        The fallback accepts the first stored row for the list as soon as the
        candidate directory exists, whatever that row's name is. The create
        path additionally requires the names to match.
        """
        parent_dir = canonicalize_dir(candidate_dir)
        with self._owner_scope("list", list_id) as conn:
            exact = self._store.find_list_entity(list_id, parent_dir, conn=conn)
            if exact is not None:
                return exact
            existing = self._store.list_list_entities(list_id, conn=conn)
            if existing and directory_exists(parent_dir):
                return self._relocate_list_entity(conn, existing[0], parent_dir)
            return None

    def create_or_reconcile_list_entity(self, candidate: ListEntity) -> ListEntity:
        parent_dir = canonicalize_dir(candidate.parent_dir)
        with self._owner_scope("list", candidate.list_id) as conn:
            exact = self._store.find_list_entity(candidate.list_id, parent_dir, conn=conn)
            if exact is not None:
                return exact
            existing = self._store.list_list_entities(candidate.list_id, conn=conn)
            if existing and directory_exists(parent_dir):
                wanted = candidate.name.casefold()
                for entity in existing:
                    if entity.name.casefold() == wanted:
                        return self._relocate_list_entity(conn, entity, parent_dir)
            created = self._store.create_list_entity(
                replace(candidate, id=None, parent_dir=parent_dir), conn=conn
            )
            LOGGER.info("NEW list %s entity %s at '%s'", created.list_id, created.id, parent_dir)
            return created

    def _relocate_list_entity(
        self, conn: Connection, entity: ListEntity, parent_dir: str
    ) -> ListEntity:
        self._store.update_list_entity_location(entity.id, parent_dir, conn=conn)
        LOGGER.info(
            "RELOCATED list %s entity %s: '%s' -> '%s'",
            entity.list_id,
            entity.id,
            entity.parent_dir,
            parent_dir,
        )
        return replace(entity, parent_dir=parent_dir)

    # ------------------------------------------------------------------
    # Membership links
    # ------------------------------------------------------------------
    def link_account_to_list_entity(
        self, account_id: int, name: str, list_entity_id: int
    ) -> AccountLink:
        """Return the link for the pair, renaming or creating it as needed."""
        with self._owner_scope("link", account_id) as conn:
            link = self._store.get_account_link(account_id, list_entity_id, conn=conn)
            if link is None:
                return self._store.create_account_link(
                    AccountLink(
                        id=None,
                        account_id=account_id,
                        name=name,
                        parent_list_entity_id=list_entity_id,
                    ),
                    conn=conn,
                )
            if link.name != name:
                self._store.update_account_link_name(link.id, name, conn=conn)
                link = replace(link, name=name)
            return link
