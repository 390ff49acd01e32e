"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_account is the mapper.
Route and engine code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Race safety:
  Sign-up and verification each run as ONE conditional statement so two
  concurrent requests for the same email cannot interleave a read and a write:

    upsert_unverified_account:
        INSERT ... ON CONFLICT (email) DO UPDATE ... WHERE users.verified = false
        RETURNING id
      The returned id tells the caller whether a row was inserted (our new id)
      or an unverified row was overwritten (its existing id). No row back means
      the email belongs to a verified account.

    conditionally_verify:
        UPDATE users SET verified = true, ... WHERE verification_code = :code
        AND verified = false

  ON CONFLICT is dialect-specific; SQLite and PostgreSQL are supported.

Error classification:
  Pool checkout timeouts, disconnects, invalidated connections, and the
  SQLite busy timeout become StoreUnavailable.
  Every other SQLAlchemyError becomes Unexpected, chained to the original
  exception. Nothing else is caught here.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    exc,
    text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from auth.errors import AccountAlreadyExists, StoreUnavailable, Unexpected
from auth.models import Account, UpsertResult

logger = logging.getLogger("userapi.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'userapi.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("display_name", String(255), nullable=False),
    Column("email", String(320), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("registered_at", DateTime, nullable=False),
    Column("verification_code", String(64), index=True),  # NULL once verified
    Column("verified", Boolean, nullable=False, server_default=text("false")),
    Column("refresh_token", Text, index=True),
    Column("refresh_token_expires_at", DateTime),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    """Current time as naive UTC -- the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _is_unavailable(err: exc.SQLAlchemyError) -> bool:
    """True when the store could not hand out a working connection in time.

    Pool checkout timeouts, disconnects, and driver errors that invalidated
    the connection qualify. So does SQLite's busy timeout ("database is
    locked"), the file-database analogue of pool exhaustion. Schema and SQL
    faults are OperationalErrors too but do not qualify.
    """
    if isinstance(err, (exc.TimeoutError, exc.DisconnectionError)):
        return True
    if isinstance(err, exc.DBAPIError) and err.connection_invalidated:
        return True
    return isinstance(err, exc.OperationalError) and "database is locked" in str(err.orig)


@contextmanager
def _classify_errors(operation: str) -> Iterator[None]:
    """Translate driver/pool failures into the auth error taxonomy."""
    try:
        yield
    except exc.SQLAlchemyError as err:
        if _is_unavailable(err):
            logger.warning("Store unavailable during %s: %s", operation, err)
            raise StoreUnavailable() from err
        logger.error("Store failure during %s", operation, exc_info=True)
        raise Unexpected(f"{operation} failed: {err}") from err


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account entities.

    Usage:
        store = AccountStore()
        result = store.upsert_unverified_account(account)
        account = store.find_verified_by_email("alice@x.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, pool_timeout: float = 5.0) -> None:
        connect_args: dict = {}
        engine_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # SQLite busy timeout -- bounds how long a writer waits on a lock.
            connect_args["timeout"] = pool_timeout
        else:
            engine_args["pool_timeout"] = pool_timeout
            engine_args["pool_pre_ping"] = True
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def _insert(self):
        """Return the dialect-specific insert() that supports ON CONFLICT."""
        if self.engine.dialect.name == "postgresql":
            return postgresql.insert(_users)
        return sqlite.insert(_users)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_account(self, account: Account) -> str:
        """Insert a new account row and return its id.

        The caller assigns the id. Raises AccountAlreadyExists if the email is
        already taken, verified or not.
        """
        with _classify_errors("insert_account"):
            try:
                with self.engine.connect() as conn:
                    conn.execute(_users.insert().values(**_account_to_row(account)))
                    conn.commit()
            except exc.IntegrityError as err:
                raise AccountAlreadyExists() from err
        return account.id

    def upsert_unverified_account(self, account: Account) -> UpsertResult:
        """Insert the account, or overwrite the unverified row with the same email.

        The overwrite touches display_name, password_hash, registered_at and
        verification_code only; the existing id is kept. Raises
        AccountAlreadyExists if the email belongs to a verified account.
        """
        stmt = self._insert().values(**_account_to_row(account))
        stmt = stmt.on_conflict_do_update(
            index_elements=[_users.c.email],
            set_={
                "display_name": stmt.excluded.display_name,
                "password_hash": stmt.excluded.password_hash,
                "registered_at": stmt.excluded.registered_at,
                "verification_code": stmt.excluded.verification_code,
            },
            where=_users.c.verified.is_(False),
        ).returning(_users.c.id)
        with _classify_errors("upsert_unverified_account"):
            with self.engine.connect() as conn:
                row = conn.execute(stmt).fetchone()
                conn.commit()
        if row is None:
            raise AccountAlreadyExists()
        return UpsertResult.INSERTED if row.id == account.id else UpsertResult.UPDATED

    def conditionally_verify(self, code: str, refresh_token: str, expires_at: datetime) -> int:
        """Mark the unverified account holding `code` as verified and install its refresh token.

        Clears verification_code in the same statement so the code is single-use.
        Returns the number of rows affected: 1 on success, 0 when the code is
        wrong, unknown, or already used.
        """
        with _classify_errors("conditionally_verify"):
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.update()
                    .where((_users.c.verification_code == code) & (_users.c.verified.is_(False)))
                    .values(
                        verified=True,
                        refresh_token=refresh_token,
                        refresh_token_expires_at=expires_at,
                        verification_code=None,
                    )
                )
                conn.commit()
        return result.rowcount

    def rotate_refresh_token(self, account_id: str, refresh_token: str, expires_at: datetime) -> bool:
        """Install a new refresh token on a verified account. Returns False if no such account."""
        with _classify_errors("rotate_refresh_token"):
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.update()
                    .where((_users.c.id == account_id) & (_users.c.verified.is_(True)))
                    .values(refresh_token=refresh_token, refresh_token_expires_at=expires_at)
                )
                conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_verified_by_email(self, email: str) -> Account | None:
        """Look up a verified account by exact email. Unverified rows are invisible here."""
        with _classify_errors("find_verified_by_email"):
            with self.engine.connect() as conn:
                row = conn.execute(
                    _users.select().where((_users.c.email == email) & (_users.c.verified.is_(True)))
                ).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_id_by_valid_refresh_token(self, refresh_token: str, now: datetime | None = None) -> str | None:
        """Return the id of the verified account holding this unexpired refresh token, else None."""
        now = now or utcnow()
        with _classify_errors("find_id_by_valid_refresh_token"):
            with self.engine.connect() as conn:
                row = conn.execute(
                    _users.select()
                    .with_only_columns(_users.c.id)
                    .where(
                        (_users.c.refresh_token == refresh_token)
                        & (_users.c.verified.is_(True))
                        & (_users.c.refresh_token_expires_at > now)
                    )
                ).fetchone()
        return row.id if row is not None else None

    def get_by_id(self, account_id: str) -> Account | None:
        """Look up an account by primary key. Returns None if not found."""
        with _classify_errors("get_by_id"):
            with self.engine.connect() as conn:
                row = conn.execute(_users.select().where(_users.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except exc.SQLAlchemyError:
            logger.warning("Database ping failed", exc_info=True)
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _account_to_row(account: Account) -> dict:
    return {
        "id": account.id,
        "display_name": account.display_name,
        "email": account.email,
        "password_hash": account.password_hash,
        "registered_at": account.registered_at or utcnow(),
        "verification_code": account.verification_code,
        "verified": account.verified,
        "refresh_token": account.refresh_token,
        "refresh_token_expires_at": account.refresh_token_expires_at,
    }


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        display_name=row.display_name,
        email=row.email,
        password_hash=row.password_hash,
        registered_at=row.registered_at,
        verification_code=row.verification_code,
        verified=bool(row.verified),
        refresh_token=row.refresh_token,
        refresh_token_expires_at=row.refresh_token_expires_at,
    )
