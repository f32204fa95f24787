"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Service and route code never touches SQL directly.

Transactions:
  Every method takes an optional ``conn``. When given, the statement runs on
  that connection and the caller owns commit/rollback. When omitted, the
  method opens its own short transaction (engine.begin()). transaction()
  hands out a connection for multi-record writes such as signup.

Timestamps:
  Stored as UTC ISO-8601 strings with a fixed microsecond format, so string
  comparison in SQL orders the same way as datetime comparison.

Storage-level expiry:
  The purge_* methods remove expired transient tokens, stale login counters
  and dead sessions. They are called from the periodic maintenance sweep.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    or_,
    select,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine

from auth.models import Account, LoginAttempt, Plan, Session, Subscription, TokenNamespace, TokenPair, TransientToken
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

# Surrogate ids are never reused. SQLite needs AUTOINCREMENT for that;
# without it the rowid of a deleted newest row goes to the next insert.

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("company_name", String(255)),
    Column("role", String(30), nullable=False, server_default="brand_owner", index=True),
    Column("is_email_verified", Boolean, nullable=False, server_default="0", index=True),
    Column("active", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)


def _transient_table(name: str) -> Table:
    return Table(
        name,
        _metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("account_id", Integer, nullable=False, index=True),
        Column("token", String(128), nullable=False, unique=True),
        Column("expires_at", String(32), nullable=False, index=True),
        Column("created_at", String(32), nullable=False),
        sqlite_autoincrement=True,
    )


_transient_tables: dict[TokenNamespace, Table] = {
    TokenNamespace.VERIFICATION: _transient_table("verification_tokens"),
    TokenNamespace.RESET: _transient_table("reset_tokens"),
}

_login_attempts = Table(
    "login_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False),
    Column("count", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False, index=True),
    # Required by the ON CONFLICT upsert in increment_login_attempt().
    UniqueConstraint("email", name="uq_login_attempts_email"),
    sqlite_autoincrement=True,
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("access_token", Text, nullable=False, index=True),
    Column("refresh_token", Text, nullable=False, index=True),
    Column("access_token_expires_at", String(32), nullable=False),
    Column("refresh_token_expires_at", String(32), nullable=False),
    Column("role", String(30), nullable=False),
    Column("persistent", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

_plans = Table(
    "plans",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("resource_limits", Text, nullable=False, server_default="{}"),  # JSON object
    sqlite_autoincrement=True,
)

_subscriptions = Table(
    "subscriptions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("plan_id", Integer, nullable=False),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("resource_usage", Text, nullable=False, server_default="{}"),  # JSON object
    sqlite_autoincrement=True,
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively and ignore surrounding whitespace."""
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for accounts, transient tokens, login counters and sessions.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        with store.transaction() as conn:
            account_id = store.create_account(account, conn=conn)
            store.create_transient_token(token, conn=conn)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self, conn: Connection | None = None) -> Iterator[Connection]:
        """Yield a connection inside a transaction.

        If ``conn`` is given the caller already owns a transaction and this
        joins it; nothing is committed here. Otherwise a new transaction is
        begun and committed on clean exit, rolled back on exception.
        """
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as owned:
            yield owned

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account, conn: Connection | None = None) -> int:
        """Insert a new account and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = _iso(_utcnow())
        with self.transaction(conn) as c:
            result = c.execute(
                _accounts.insert().values(
                    email=normalize_email(account.email),
                    name=account.name,
                    hashed_password=account.hashed_password,
                    company_name=account.company_name,
                    role=account.role,
                    is_email_verified=account.is_email_verified,
                    active=account.active,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_account_by_email(self, email: str, conn: Connection | None = None) -> Account | None:
        with self.transaction(conn) as c:
            row = c.execute(select(_accounts).where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_by_id(self, account_id: int, conn: Connection | None = None) -> Account | None:
        with self.transaction(conn) as c:
            row = c.execute(select(_accounts).where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_account(self, account_id: int, conn: Connection | None = None, **fields) -> bool:
        """Update mutable fields on an account.

        Accepted fields: name, company_name, role, is_email_verified, active,
        hashed_password. Returns True if a row was updated.
        """
        fields["updated_at"] = _iso(_utcnow())
        with self.transaction(conn) as c:
            result = c.execute(update(_accounts).where(_accounts.c.id == account_id).values(**fields))
        return result.rowcount > 0

    def delete_account(self, account_id: int, conn: Connection | None = None) -> bool:
        """Delete an account together with everything keyed on its id.

        Transient tokens, sessions and subscriptions are removed in the
        same transaction.
        """
        with self.transaction(conn) as c:
            for table in _transient_tables.values():
                c.execute(delete(table).where(table.c.account_id == account_id))
            c.execute(delete(_sessions).where(_sessions.c.account_id == account_id))
            c.execute(delete(_subscriptions).where(_subscriptions.c.account_id == account_id))
            result = c.execute(delete(_accounts).where(_accounts.c.id == account_id))
        return result.rowcount > 0

    def list_unverified_account_ids(self, conn: Connection | None = None) -> list[int]:
        with self.transaction(conn) as c:
            rows = c.execute(
                select(_accounts.c.id).where(_accounts.c.is_email_verified.is_(False)).order_by(_accounts.c.id)
            ).fetchall()
        return [row.id for row in rows]

    # ------------------------------------------------------------------
    # Transient tokens (verification / reset)
    # ------------------------------------------------------------------

    def create_transient_token(self, token: TransientToken, conn: Connection | None = None) -> int:
        table = _transient_tables[token.namespace]
        with self.transaction(conn) as c:
            result = c.execute(
                table.insert().values(
                    account_id=token.account_id,
                    token=token.token,
                    expires_at=_iso(token.expires_at),
                    created_at=_iso(_utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def get_transient_token(
        self, namespace: TokenNamespace, raw_token: str, conn: Connection | None = None
    ) -> TransientToken | None:
        """Look up a token by its raw value, expired or not."""
        table = _transient_tables[namespace]
        with self.transaction(conn) as c:
            row = c.execute(select(table).where(table.c.token == raw_token)).fetchone()
        return _row_to_transient(namespace, row) if row is not None else None

    def find_live_transient_token(
        self, namespace: TokenNamespace, account_id: int, now: datetime, conn: Connection | None = None
    ) -> TransientToken | None:
        """Return an unexpired token owned by the account, if any."""
        table = _transient_tables[namespace]
        with self.transaction(conn) as c:
            row = c.execute(
                select(table)
                .where((table.c.account_id == account_id) & (table.c.expires_at > _iso(now)))
                .order_by(table.c.expires_at.desc())
            ).first()
        return _row_to_transient(namespace, row) if row is not None else None

    def delete_transient_token(self, namespace: TokenNamespace, token_id: int, conn: Connection | None = None) -> bool:
        table = _transient_tables[namespace]
        with self.transaction(conn) as c:
            result = c.execute(delete(table).where(table.c.id == token_id))
        return result.rowcount > 0

    def purge_expired_transient_tokens(self, now: datetime) -> int:
        """Delete expired tokens from both namespaces. Returns rows removed."""
        removed = 0
        with self.transaction() as c:
            for table in _transient_tables.values():
                removed += c.execute(delete(table).where(table.c.expires_at <= _iso(now))).rowcount
        return removed

    # ------------------------------------------------------------------
    # Login attempts
    # ------------------------------------------------------------------

    def get_login_attempt(self, email: str, conn: Connection | None = None) -> LoginAttempt | None:
        with self.transaction(conn) as c:
            row = c.execute(select(_login_attempts).where(_login_attempts.c.email == normalize_email(email))).fetchone()
        return _row_to_login_attempt(row) if row is not None else None

    def increment_login_attempt(self, email: str, now: datetime, conn: Connection | None = None) -> int:
        """Atomically create-or-increment the failure counter. Returns the new count.

        A single INSERT .. ON CONFLICT DO UPDATE keeps concurrent failures
        from the same email from losing increments.
        """
        email = normalize_email(email)
        stamp = _iso(now)
        dialect_insert = postgresql.insert if self.engine.dialect.name == "postgresql" else sqlite.insert
        stmt = dialect_insert(_login_attempts).values(email=email, count=1, created_at=stamp, updated_at=stamp)
        stmt = stmt.on_conflict_do_update(
            index_elements=[_login_attempts.c.email],
            set_={"count": _login_attempts.c.count + 1, "updated_at": stamp},
        )
        with self.transaction(conn) as c:
            c.execute(stmt)
            count = c.execute(select(_login_attempts.c.count).where(_login_attempts.c.email == email)).scalar()
        return int(count or 0)

    def delete_login_attempt(self, email: str, conn: Connection | None = None) -> bool:
        with self.transaction(conn) as c:
            result = c.execute(delete(_login_attempts).where(_login_attempts.c.email == normalize_email(email)))
        return result.rowcount > 0

    def purge_login_attempts(self, older_than: datetime) -> int:
        """Delete counters not touched since ``older_than``. Returns rows removed."""
        with self.transaction() as c:
            result = c.execute(delete(_login_attempts).where(_login_attempts.c.updated_at < _iso(older_than)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session, conn: Connection | None = None) -> int:
        now = _iso(_utcnow())
        with self.transaction(conn) as c:
            result = c.execute(
                _sessions.insert().values(
                    account_id=session.account_id,
                    access_token=session.access_token,
                    refresh_token=session.refresh_token,
                    access_token_expires_at=_iso(session.access_token_expires_at),
                    refresh_token_expires_at=_iso(session.refresh_token_expires_at),
                    role=session.role,
                    persistent=session.persistent,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_session_by_refresh_token(self, refresh_token: str, conn: Connection | None = None) -> Session | None:
        with self.transaction(conn) as c:
            row = c.execute(select(_sessions).where(_sessions.c.refresh_token == refresh_token)).first()
        return _row_to_session(row) if row is not None else None

    def find_live_session(
        self, access_token: str, account_id: int, now: datetime, conn: Connection | None = None
    ) -> Session | None:
        """Return the session matching the access token, owner and an unexpired access expiry."""
        with self.transaction(conn) as c:
            row = c.execute(
                select(_sessions).where(
                    (_sessions.c.access_token == access_token)
                    & (_sessions.c.account_id == account_id)
                    & (_sessions.c.access_token_expires_at > _iso(now))
                )
            ).first()
        return _row_to_session(row) if row is not None else None

    def rotate_session(
        self, session_id: int, old_refresh_token: str, pair: TokenPair, conn: Connection | None = None
    ) -> bool:
        """Overwrite a session's tokens and expiries in place.

        The update only matches while the session still holds
        ``old_refresh_token``, so of two concurrent refreshes presenting the
        same token exactly one wins. Returns False for the loser.
        """
        with self.transaction(conn) as c:
            result = c.execute(
                update(_sessions)
                .where((_sessions.c.id == session_id) & (_sessions.c.refresh_token == old_refresh_token))
                .values(
                    access_token=pair.access_token,
                    refresh_token=pair.refresh_token,
                    access_token_expires_at=_iso(pair.access_token_expires_at),
                    refresh_token_expires_at=_iso(pair.refresh_token_expires_at),
                    updated_at=_iso(_utcnow()),
                )
            )
        return result.rowcount > 0

    def delete_session(self, session_id: int, conn: Connection | None = None) -> bool:
        with self.transaction(conn) as c:
            result = c.execute(delete(_sessions).where(_sessions.c.id == session_id))
        return result.rowcount > 0

    def delete_sessions_by_token(self, token: str, conn: Connection | None = None) -> int:
        """Delete every session whose access OR refresh token equals ``token``."""
        with self.transaction(conn) as c:
            result = c.execute(
                delete(_sessions).where(or_(_sessions.c.access_token == token, _sessions.c.refresh_token == token))
            )
        return result.rowcount

    def count_sessions(self, account_id: int, conn: Connection | None = None) -> int:
        with self.transaction(conn) as c:
            rows = c.execute(select(_sessions.c.id).where(_sessions.c.account_id == account_id)).fetchall()
        return len(rows)

    def purge_expired_sessions(self, now: datetime) -> int:
        """Delete sessions whose refresh token has expired. Returns rows removed."""
        with self.transaction() as c:
            result = c.execute(delete(_sessions).where(_sessions.c.refresh_token_expires_at <= _iso(now)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Plans / subscriptions (read projection for access checks)
    # ------------------------------------------------------------------

    def create_plan(self, plan: Plan, conn: Connection | None = None) -> int:
        with self.transaction(conn) as c:
            result = c.execute(
                _plans.insert().values(name=plan.name, resource_limits=json.dumps(plan.resource_limits))
            )
            return result.inserted_primary_key[0]

    def create_subscription(self, subscription: Subscription, conn: Connection | None = None) -> int:
        if subscription.plan is None or subscription.plan.id is None:
            raise ValueError("Subscription requires a stored plan")
        with self.transaction(conn) as c:
            result = c.execute(
                _subscriptions.insert().values(
                    account_id=subscription.account_id,
                    plan_id=subscription.plan.id,
                    status=subscription.status,
                    resource_usage=json.dumps(subscription.resource_usage),
                )
            )
            return result.inserted_primary_key[0]

    def get_subscription_for_account(self, account_id: int, conn: Connection | None = None) -> Subscription | None:
        """Return the account's most recent subscription with its plan joined in."""
        stmt = (
            select(
                _subscriptions,
                _plans.c.name.label("plan_name"),
                _plans.c.resource_limits.label("plan_resource_limits"),
            )
            .select_from(_subscriptions.outerjoin(_plans, _plans.c.id == _subscriptions.c.plan_id))
            .where(_subscriptions.c.account_id == account_id)
            .order_by(_subscriptions.c.id.desc())
        )
        with self.transaction(conn) as c:
            row = c.execute(stmt).first()
        return _row_to_subscription(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        company_name=row.company_name,
        role=row.role,
        is_email_verified=bool(row.is_email_verified),
        active=bool(row.active),
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
    )


def _row_to_transient(namespace: TokenNamespace, row) -> TransientToken:
    return TransientToken(
        id=row.id,
        namespace=namespace,
        account_id=row.account_id,
        token=row.token,
        expires_at=_parse(row.expires_at),
        created_at=_parse(row.created_at),
    )


def _row_to_login_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        email=row.email,
        count=row.count,
        updated_at=_parse(row.updated_at),
        created_at=_parse(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        account_id=row.account_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        access_token_expires_at=_parse(row.access_token_expires_at),
        refresh_token_expires_at=_parse(row.refresh_token_expires_at),
        role=row.role,
        persistent=bool(row.persistent),
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
    )


def _row_to_subscription(row) -> Subscription:
    plan = None
    if row.plan_name is not None:
        plan = Plan(id=row.plan_id, name=row.plan_name, resource_limits=json.loads(row.plan_resource_limits or "{}"))
    return Subscription(
        id=row.id,
        account_id=row.account_id,
        plan=plan,
        status=row.status,
        resource_usage=json.loads(row.resource_usage or "{}"),
    )
