"""Persistence primitives for accounts, lists and their local download roots."""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, List, Optional, TypeVar

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from tmd_catalog.config import CatalogSettings, get_catalog_settings
from tmd_catalog.data.paths import PathLike, canonicalize_dir


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def _utc_now() -> datetime:
    # SQLite DATETIME columns drop tzinfo, so store naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class Account:
    """Local mirror of a remote account's metadata."""

    id: int
    screen_name: str
    name: str
    protected: bool = False
    friends_count: int = 0


@dataclass(frozen=True)
class AccountNameHistory:
    """A screen name / display name pair an account used to have."""

    id: int
    account_id: int
    screen_name: str
    name: str
    record_date: datetime


@dataclass(frozen=True)
class AccountList:
    """A remote curated list of accounts."""

    id: int
    name: str
    owner_account_id: int


@dataclass(frozen=True)
class AccountEntity:
    """Binds an account to one local download root."""

    id: Optional[int]
    account_id: int
    name: str
    parent_dir: str
    latest_release_time: Optional[datetime] = None
    media_count: Optional[int] = None


@dataclass(frozen=True)
class ListEntity:
    """Binds a list to one local download root."""

    id: Optional[int]
    list_id: int
    name: str
    parent_dir: str


@dataclass(frozen=True)
class AccountLink:
    """Membership of an account inside a list entity's directory tree."""

    id: Optional[int]
    account_id: int
    name: str
    parent_list_entity_id: int


class EntityStore:
    """Typed wrapper around the catalog database.

    Each public method is a single statement. Methods take an optional
    ``conn``: when given, the statement joins the caller's transaction and is
    not retried; otherwise the store opens (and retries) its own.
    """

    ACCOUNT_TABLE = "accounts"
    NAME_HISTORY_TABLE = "account_name_history"
    LIST_TABLE = "lists"
    LIST_ENTITY_TABLE = "list_entities"
    ACCOUNT_ENTITY_TABLE = "account_entities"
    LINK_TABLE = "account_links"
    _RETRYABLE_SQLITE_ERRORS = ("disk i/o error", "database is locked")

    def __init__(
        self,
        engine: Engine,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._engine = engine
        self._max_attempts = max_attempts
        self._base_delay_seconds = base_delay_seconds
        self._clock = clock
        self._metadata = MetaData()
        self._account_table = Table(
            self.ACCOUNT_TABLE,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=False),
            Column("screen_name", String, nullable=False, unique=True),
            Column("name", String, nullable=False),
            Column("protected", Boolean, nullable=False),
            Column("friends_count", Integer, nullable=False),
        )
        self._name_history_table = Table(
            self.NAME_HISTORY_TABLE,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
            Column("screen_name", String, nullable=False),
            Column("name", String, nullable=False),
            Column("record_date", DateTime(timezone=False), nullable=False),
        )
        self._list_table = Table(
            self.LIST_TABLE,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=False),
            Column("name", String, nullable=False),
            Column("owner_account_id", Integer, nullable=False),
        )
        self._list_entity_table = Table(
            self.LIST_ENTITY_TABLE,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("list_id", Integer, nullable=False),
            Column("name", String, nullable=False),
            Column("parent_dir", String(collation="NOCASE"), nullable=False),
            UniqueConstraint("list_id", "parent_dir", name="uq_list_entity_dir"),
        )
        self._account_entity_table = Table(
            self.ACCOUNT_ENTITY_TABLE,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
            Column("name", String, nullable=False),
            Column("latest_release_time", DateTime(timezone=False), nullable=True),
            Column("parent_dir", String(collation="NOCASE"), nullable=False),
            Column("media_count", Integer, nullable=True),
            UniqueConstraint("account_id", "parent_dir", name="uq_account_entity_dir"),
        )
        self._link_table = Table(
            self.LINK_TABLE,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
            Column("name", String, nullable=False),
            Column(
                "parent_list_entity_id",
                Integer,
                ForeignKey("list_entities.id"),
                nullable=False,
            ),
            UniqueConstraint("account_id", "parent_list_entity_id", name="uq_account_link"),
            Index("idx_account_links_account_id", "account_id"),
        )
        self._execute_with_retry(
            "create_schema",
            lambda engine: self._metadata.create_all(engine, checkfirst=True),
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _execute_with_retry(
        self,
        op_name: str,
        fn: Callable[[Engine], T],
        *,
        max_attempts: Optional[int] = None,
        base_delay_seconds: Optional[float] = None,
    ) -> T:
        if max_attempts is None:
            max_attempts = self._max_attempts
        if base_delay_seconds is None:
            base_delay_seconds = self._base_delay_seconds

        last_exc: Optional[OperationalError] = None
        for attempt in range(1, max_attempts + 1):
            try:
                return fn(self._engine)
            except OperationalError as exc:
                if getattr(exc, "orig", None) is not None:
                    message = str(exc.orig).lower()
                else:
                    message = str(exc).lower()

                if not any(token in message for token in self._RETRYABLE_SQLITE_ERRORS):
                    raise

                last_exc = exc
                LOGGER.error(
                    "Retryable SQLite error during %s (attempt %s/%s): %s",
                    op_name,
                    attempt,
                    max_attempts,
                    message or exc,
                )
                self._engine.dispose()

                if attempt == max_attempts:
                    break

                sleep_for = base_delay_seconds * (2 ** (attempt - 1))
                time.sleep(sleep_for)

        assert last_exc is not None
        LOGGER.error(
            "Exhausted retries for %s after %s attempts; re-raising.",
            op_name,
            max_attempts,
        )
        raise last_exc

    def _run(
        self,
        op_name: str,
        fn: Callable[[Connection], T],
        conn: Optional[Connection] = None,
        *,
        write: bool = True,
    ) -> T:
        if conn is not None:
            return fn(conn)

        def _op(engine: Engine) -> T:
            if write:
                with engine.begin() as own:
                    return fn(own)
            with engine.connect() as own:
                return fn(own)

        return self._execute_with_retry(op_name, _op)

    def _fetch_one(self, op_name: str, stmt: Any, record_type: type, conn: Optional[Connection]):
        def _op(c: Connection):
            row = c.execute(stmt).first()
            return record_type(**row._mapping) if row is not None else None

        return self._run(op_name, _op, conn, write=False)

    def _fetch_all(self, op_name: str, stmt: Any, record_type: type, conn: Optional[Connection]):
        def _op(c: Connection):
            return [record_type(**row._mapping) for row in c.execute(stmt)]

        return self._run(op_name, _op, conn, write=False)

    def _insert(self, op_name: str, table: Table, values: dict, conn: Optional[Connection]) -> int:
        def _op(c: Connection) -> int:
            result = c.execute(insert(table).values(**values))
            return result.inserted_primary_key[0]

        return self._run(op_name, _op, conn)

    def _modify(self, op_name: str, stmt: Any, conn: Optional[Connection]) -> bool:
        def _op(c: Connection) -> bool:
            return (c.execute(stmt).rowcount or 0) > 0

        return self._run(op_name, _op, conn)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection whose statements commit (or roll back) together."""
        with self._engine.begin() as conn:
            yield conn

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def create_account(self, account: Account, *, conn: Optional[Connection] = None) -> Account:
        self._insert(
            "create_account",
            self._account_table,
            {
                "id": account.id,
                "screen_name": account.screen_name,
                "name": account.name,
                "protected": account.protected,
                "friends_count": account.friends_count,
            },
            conn,
        )
        return account

    def get_account(self, account_id: int, *, conn: Optional[Connection] = None) -> Optional[Account]:
        table = self._account_table
        stmt = select(table).where(table.c.id == account_id)
        return self._fetch_one("get_account", stmt, Account, conn)

    def get_account_by_screen_name(
        self, screen_name: str, *, conn: Optional[Connection] = None
    ) -> Optional[Account]:
        table = self._account_table
        stmt = select(table).where(table.c.screen_name == screen_name)
        return self._fetch_one("get_account_by_screen_name", stmt, Account, conn)

    def update_account(self, account: Account, *, conn: Optional[Connection] = None) -> bool:
        table = self._account_table
        stmt = (
            update(table)
            .where(table.c.id == account.id)
            .values(
                screen_name=account.screen_name,
                name=account.name,
                protected=account.protected,
                friends_count=account.friends_count,
            )
        )
        return self._modify("update_account", stmt, conn)

    def delete_account(self, account_id: int, *, conn: Optional[Connection] = None) -> bool:
        table = self._account_table
        return self._modify("delete_account", delete(table).where(table.c.id == account_id), conn)

    # ------------------------------------------------------------------
    # Name history (append-only)
    # ------------------------------------------------------------------
    def record_name_change(
        self,
        account_id: int,
        prior_screen_name: str,
        prior_name: str,
        *,
        conn: Optional[Connection] = None,
    ) -> None:
        self._insert(
            "record_name_change",
            self._name_history_table,
            {
                "account_id": account_id,
                "screen_name": prior_screen_name,
                "name": prior_name,
                "record_date": self._clock(),
            },
            conn,
        )

    def list_name_history(
        self, account_id: int, *, conn: Optional[Connection] = None
    ) -> List[AccountNameHistory]:
        table = self._name_history_table
        stmt = (
            select(table)
            .where(table.c.account_id == account_id)
            .order_by(table.c.record_date, table.c.id)
        )
        return self._fetch_all("list_name_history", stmt, AccountNameHistory, conn)

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------
    def create_list(self, lst: AccountList, *, conn: Optional[Connection] = None) -> AccountList:
        self._insert(
            "create_list",
            self._list_table,
            {"id": lst.id, "name": lst.name, "owner_account_id": lst.owner_account_id},
            conn,
        )
        return lst

    def get_list(self, list_id: int, *, conn: Optional[Connection] = None) -> Optional[AccountList]:
        table = self._list_table
        return self._fetch_one(
            "get_list", select(table).where(table.c.id == list_id), AccountList, conn
        )

    def update_list(self, lst: AccountList, *, conn: Optional[Connection] = None) -> bool:
        table = self._list_table
        stmt = update(table).where(table.c.id == lst.id).values(name=lst.name)
        return self._modify("update_list", stmt, conn)

    def delete_list(self, list_id: int, *, conn: Optional[Connection] = None) -> bool:
        table = self._list_table
        return self._modify("delete_list", delete(table).where(table.c.id == list_id), conn)

    # ------------------------------------------------------------------
    # Account entities
    # ------------------------------------------------------------------
    def create_account_entity(
        self, entity: AccountEntity, *, conn: Optional[Connection] = None
    ) -> AccountEntity:
        parent_dir = canonicalize_dir(entity.parent_dir)
        entity_id = self._insert(
            "create_account_entity",
            self._account_entity_table,
            {
                "account_id": entity.account_id,
                "name": entity.name,
                "parent_dir": parent_dir,
                "latest_release_time": entity.latest_release_time,
                "media_count": entity.media_count,
            },
            conn,
        )
        return AccountEntity(
            id=entity_id,
            account_id=entity.account_id,
            name=entity.name,
            parent_dir=parent_dir,
            latest_release_time=entity.latest_release_time,
            media_count=entity.media_count,
        )

    def get_account_entity(
        self, entity_id: int, *, conn: Optional[Connection] = None
    ) -> Optional[AccountEntity]:
        table = self._account_entity_table
        stmt = select(table).where(table.c.id == entity_id)
        return self._fetch_one("get_account_entity", stmt, AccountEntity, conn)

    def find_account_entity(
        self, account_id: int, directory: PathLike, *, conn: Optional[Connection] = None
    ) -> Optional[AccountEntity]:
        """Exact (case-insensitive) match on account and directory."""
        table = self._account_entity_table
        stmt = select(table).where(
            table.c.account_id == account_id,
            table.c.parent_dir == canonicalize_dir(directory),
        )
        return self._fetch_one("find_account_entity", stmt, AccountEntity, conn)

    def list_account_entities(
        self, account_id: int, *, conn: Optional[Connection] = None
    ) -> List[AccountEntity]:
        table = self._account_entity_table
        stmt = select(table).where(table.c.account_id == account_id).order_by(table.c.id)
        return self._fetch_all("list_account_entities", stmt, AccountEntity, conn)

    def count_account_entities(self, account_id: int, *, conn: Optional[Connection] = None) -> int:
        table = self._account_entity_table
        stmt = select(func.count()).select_from(table).where(table.c.account_id == account_id)
        return self._run(
            "count_account_entities", lambda c: c.execute(stmt).scalar() or 0, conn, write=False
        )

    def update_account_entity(
        self, entity: AccountEntity, *, conn: Optional[Connection] = None
    ) -> bool:
        table = self._account_entity_table
        stmt = (
            update(table)
            .where(table.c.id == entity.id)
            .values(
                name=entity.name,
                latest_release_time=entity.latest_release_time,
                media_count=entity.media_count,
            )
        )
        return self._modify("update_account_entity", stmt, conn)

    def update_account_entity_location(
        self,
        entity_id: int,
        directory: PathLike,
        name: Optional[str] = None,
        *,
        conn: Optional[Connection] = None,
    ) -> bool:
        """Point an entity at a new directory, optionally renaming it too."""
        table = self._account_entity_table
        values: dict = {"parent_dir": canonicalize_dir(directory)}
        if name is not None:
            values["name"] = name
        stmt = update(table).where(table.c.id == entity_id).values(**values)
        return self._modify("update_account_entity_location", stmt, conn)

    def set_account_entity_media_count(
        self, entity_id: int, media_count: int, *, conn: Optional[Connection] = None
    ) -> bool:
        table = self._account_entity_table
        stmt = update(table).where(table.c.id == entity_id).values(media_count=media_count)
        return self._modify("set_account_entity_media_count", stmt, conn)

    def set_account_entity_latest_release_time(
        self, entity_id: int, latest_release_time: datetime, *, conn: Optional[Connection] = None
    ) -> bool:
        table = self._account_entity_table
        stmt = (
            update(table)
            .where(table.c.id == entity_id)
            .values(latest_release_time=latest_release_time)
        )
        return self._modify("set_account_entity_latest_release_time", stmt, conn)

    def set_account_entity_release_stat(
        self,
        entity_id: int,
        latest_release_time: datetime,
        media_count: int,
        *,
        conn: Optional[Connection] = None,
    ) -> bool:
        """Record the newest downloaded release and the running media count."""
        table = self._account_entity_table
        stmt = (
            update(table)
            .where(table.c.id == entity_id)
            .values(latest_release_time=latest_release_time, media_count=media_count)
        )
        return self._modify("set_account_entity_release_stat", stmt, conn)

    def delete_account_entity(self, entity_id: int, *, conn: Optional[Connection] = None) -> bool:
        table = self._account_entity_table
        return self._modify(
            "delete_account_entity", delete(table).where(table.c.id == entity_id), conn
        )

    # ------------------------------------------------------------------
    # List entities
    # ------------------------------------------------------------------
    def create_list_entity(
        self, entity: ListEntity, *, conn: Optional[Connection] = None
    ) -> ListEntity:
        parent_dir = canonicalize_dir(entity.parent_dir)
        entity_id = self._insert(
            "create_list_entity",
            self._list_entity_table,
            {"list_id": entity.list_id, "name": entity.name, "parent_dir": parent_dir},
            conn,
        )
        return ListEntity(id=entity_id, list_id=entity.list_id, name=entity.name, parent_dir=parent_dir)

    def get_list_entity(
        self, entity_id: int, *, conn: Optional[Connection] = None
    ) -> Optional[ListEntity]:
        table = self._list_entity_table
        stmt = select(table).where(table.c.id == entity_id)
        return self._fetch_one("get_list_entity", stmt, ListEntity, conn)

    def find_list_entity(
        self, list_id: int, directory: PathLike, *, conn: Optional[Connection] = None
    ) -> Optional[ListEntity]:
        """Exact (case-insensitive) match on list and directory."""
        table = self._list_entity_table
        stmt = select(table).where(
            table.c.list_id == list_id,
            table.c.parent_dir == canonicalize_dir(directory),
        )
        return self._fetch_one("find_list_entity", stmt, ListEntity, conn)

    def list_list_entities(
        self, list_id: int, *, conn: Optional[Connection] = None
    ) -> List[ListEntity]:
        table = self._list_entity_table
        stmt = select(table).where(table.c.list_id == list_id).order_by(table.c.id)
        return self._fetch_all("list_list_entities", stmt, ListEntity, conn)

    def count_list_entities(self, list_id: int, *, conn: Optional[Connection] = None) -> int:
        table = self._list_entity_table
        stmt = select(func.count()).select_from(table).where(table.c.list_id == list_id)
        return self._run(
            "count_list_entities", lambda c: c.execute(stmt).scalar() or 0, conn, write=False
        )

    def update_list_entity(self, entity: ListEntity, *, conn: Optional[Connection] = None) -> bool:
        table = self._list_entity_table
        stmt = update(table).where(table.c.id == entity.id).values(name=entity.name)
        return self._modify("update_list_entity", stmt, conn)

    def update_list_entity_location(
        self, entity_id: int, directory: PathLike, *, conn: Optional[Connection] = None
    ) -> bool:
        table = self._list_entity_table
        stmt = (
            update(table)
            .where(table.c.id == entity_id)
            .values(parent_dir=canonicalize_dir(directory))
        )
        return self._modify("update_list_entity_location", stmt, conn)

    def delete_list_entity(self, entity_id: int, *, conn: Optional[Connection] = None) -> bool:
        table = self._list_entity_table
        return self._modify(
            "delete_list_entity", delete(table).where(table.c.id == entity_id), conn
        )

    # ------------------------------------------------------------------
    # Account links
    # ------------------------------------------------------------------
    def create_account_link(
        self, link: AccountLink, *, conn: Optional[Connection] = None
    ) -> AccountLink:
        link_id = self._insert(
            "create_account_link",
            self._link_table,
            {
                "account_id": link.account_id,
                "name": link.name,
                "parent_list_entity_id": link.parent_list_entity_id,
            },
            conn,
        )
        return AccountLink(
            id=link_id,
            account_id=link.account_id,
            name=link.name,
            parent_list_entity_id=link.parent_list_entity_id,
        )

    def get_account_link(
        self, account_id: int, list_entity_id: int, *, conn: Optional[Connection] = None
    ) -> Optional[AccountLink]:
        table = self._link_table
        stmt = select(table).where(
            table.c.account_id == account_id,
            table.c.parent_list_entity_id == list_entity_id,
        )
        return self._fetch_one("get_account_link", stmt, AccountLink, conn)

    def list_links_for_account(
        self, account_id: int, *, conn: Optional[Connection] = None
    ) -> List[AccountLink]:
        table = self._link_table
        stmt = select(table).where(table.c.account_id == account_id)
        return self._fetch_all("list_links_for_account", stmt, AccountLink, conn)

    def update_account_link_name(
        self, link_id: int, name: str, *, conn: Optional[Connection] = None
    ) -> bool:
        table = self._link_table
        stmt = update(table).where(table.c.id == link_id).values(name=name)
        return self._modify("update_account_link_name", stmt, conn)

    def delete_account_link(self, link_id: int, *, conn: Optional[Connection] = None) -> bool:
        table = self._link_table
        return self._modify("delete_account_link", delete(table).where(table.c.id == link_id), conn)


def create_catalog_engine(settings: CatalogSettings) -> Engine:
    """Build an engine for the catalog file, creating its directory if needed."""
    settings.path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(settings.url, future=True)


def get_entity_store(engine: Engine, *, max_attempts: int = 3) -> EntityStore:
    return EntityStore(engine, max_attempts=max_attempts)


def open_entity_store(settings: Optional[CatalogSettings] = None) -> EntityStore:
    """Open the configured catalog, creating the schema on first use."""
    if settings is None:
        settings = get_catalog_settings()
    engine = create_catalog_engine(settings)
    LOGGER.debug("Opening catalog at %s", settings.path)
    return get_entity_store(engine, max_attempts=settings.max_attempts)
