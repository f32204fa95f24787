"""
auth/service.py -- The authentication state machine.

AuthService orchestrates the credential store, transient tokens, login
counters, sessions, the token issuer and the email collaborator into the
account lifecycle:

    signup -> (verify_email) -> login -> refresh* -> logout
                             \\-> forgot_password -> reset_password

Public operations return Outcome values (see auth/errors.py). Expected
failures never escape as exceptions; storage errors do.

Policy constants (token TTLs, lockout threshold and window, counter
retention) come from Settings. The clock is injectable so tests can move
time without sleeping.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import AuthError, ErrorKind, Outcome, TokenExpiredError, returns_outcome
from auth.mailer import EmailDeliveryError, EmailSender, redact_email
from auth.models import DEFAULT_ROLE, Account, AccountView, Session, TokenNamespace, TransientToken
from auth.store import AuthStore, normalize_email
from auth.tokens import TokenIssuer, generate_transient_token, hash_password, verify_password
from core.config import Settings, get_settings

logger = logging.getLogger("sessionkeeper.service")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignupResult:
    account: AccountView
    # Raw verification token, for tests and ops tooling. Routes never return it.
    token: str


@dataclass(frozen=True)
class LoginResult:
    account: AccountView
    access_token: str
    refresh_token: str
    persistent: bool
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    refresh_token: str
    persistent: bool
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


@dataclass(frozen=True)
class MaintenanceReport:
    unverified_accounts_deleted: int = 0
    transient_tokens_purged: int = 0
    login_attempts_purged: int = 0
    sessions_purged: int = 0


def redact(account: Account) -> AccountView:
    """Project an Account without its password hash."""
    return AccountView(
        id=account.id,
        name=account.name,
        email=account.email,
        company_name=account.company_name,
        role=account.role,
        is_email_verified=account.is_email_verified,
        active=account.active,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuthService:
    """Credential and session lifecycle operations.

    Usage:
        service = AuthService(store, SmtpEmailSender.from_settings(settings), TokenIssuer(settings))
        outcome = service.login("a@x.com", "pw", remember_me=False)
        if outcome.ok:
            tokens = outcome.value
    """

    def __init__(
        self,
        store: AuthStore,
        mailer: EmailSender,
        issuer: TokenIssuer,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._mailer = mailer
        self._issuer = issuer
        self._settings = settings or get_settings()
        self._clock = clock or _utcnow
        # Compared against when the email is unknown so a miss costs the same
        # bcrypt work as a wrong password.
        self._dummy_hash = hash_password("sessionkeeper_timing_dummy", self._settings.bcrypt_rounds)

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Signup / verification
    # ------------------------------------------------------------------

    @returns_outcome
    def signup(
        self,
        name: str,
        email: str,
        password: str,
        company_name: str | None = None,
        conn: Connection | None = None,
    ) -> SignupResult:
        """Register an unverified account and email it a verification token.

        An unverified account whose token has lapsed is treated as abandoned
        and replaced. The account and token are written in one transaction
        (joining ``conn`` when given). Delivery happens after the write, so a
        failed send leaves both persisted and reports email_failed.
        """
        email = normalize_email(email)
        now = self._now()
        hashed = hash_password(password, self._settings.bcrypt_rounds)
        raw_token = generate_transient_token()

        with self._store.transaction(conn) as tx:
            existing = self._store.get_account_by_email(email, conn=tx)
            if existing is not None:
                if existing.is_email_verified:
                    raise AuthError(ErrorKind.EMAIL_EXISTS)
                live = self._store.find_live_transient_token(TokenNamespace.VERIFICATION, existing.id, now, conn=tx)
                if live is not None:
                    raise AuthError(ErrorKind.VERIFICATION_ALREADY_SENT)
                logger.info("Replacing abandoned unverified account %d (%s)", existing.id, redact_email(email))
                self._store.delete_account(existing.id, conn=tx)

            account = Account(
                email=email,
                name=name,
                hashed_password=hashed,
                company_name=company_name,
                role=DEFAULT_ROLE,
                is_email_verified=False,
            )
            try:
                account_id = self._store.create_account(account, conn=tx)
            except IntegrityError:
                # A concurrent signup for the same email committed first.
                raise AuthError(ErrorKind.VERIFICATION_ALREADY_SENT) from None
            self._store.create_transient_token(
                TransientToken(
                    namespace=TokenNamespace.VERIFICATION,
                    account_id=account_id,
                    token=raw_token,
                    expires_at=now + timedelta(minutes=self._settings.verification_token_ttl_minutes),
                ),
                conn=tx,
            )

        self._deliver(self._mailer.send_verification_email, email, raw_token)
        logger.info("Signup for account %d (%s), verification sent", account_id, redact_email(email))
        created = self._store.get_account_by_id(account_id, conn=conn)
        return SignupResult(account=redact(created), token=raw_token)

    @returns_outcome
    def verify_email(self, token: str) -> AccountView:
        """Mark the owning account verified and consume the token (single use)."""
        record = self._load_live_token(TokenNamespace.VERIFICATION, token, ErrorKind.INVALID_VERIFICATION_TOKEN)
        with self._store.transaction() as tx:
            account = self._store.get_account_by_id(record.account_id, conn=tx)
            if account is None:
                raise AuthError(ErrorKind.USER_NOT_FOUND)
            # Deleting first makes a concurrent second use lose the race.
            if not self._store.delete_transient_token(TokenNamespace.VERIFICATION, record.id, conn=tx):
                raise AuthError(ErrorKind.INVALID_VERIFICATION_TOKEN)
            self._store.update_account(account.id, conn=tx, is_email_verified=True)
            verified = self._store.get_account_by_id(account.id, conn=tx)
        logger.info("Email verified for account %d", verified.id)
        return redact(verified)

    # ------------------------------------------------------------------
    # Login / logout / refresh
    # ------------------------------------------------------------------

    @returns_outcome
    def login(self, email: str, password: str, remember_me: bool = False) -> LoginResult:
        """Authenticate with email and password and open a new session.

        Unknown email and wrong password produce the same error. Failures
        other than an inactive account count toward the lockout; a success
        clears the counter.
        """
        email = normalize_email(email)
        now = self._now()

        attempt = self._store.get_login_attempt(email)
        if attempt is not None and attempt.count >= self._settings.max_login_attempts:
            if attempt.updated_at > now - timedelta(minutes=self._settings.login_lockout_minutes):
                logger.warning("Login locked out for %s (%d failures)", redact_email(email), attempt.count)
                raise AuthError(ErrorKind.TOO_MANY_ATTEMPTS)

        account = self._store.get_account_by_email(email)
        if account is None:
            verify_password(password, self._dummy_hash)
            self._record_failure(email, now, "unknown email")
            raise AuthError(ErrorKind.INVALID_CREDENTIALS)

        if not account.is_email_verified:
            self._record_failure(email, now, "email not verified")
            raise AuthError(ErrorKind.EMAIL_NOT_VERIFIED)

        if not account.active:
            logger.warning("Login refused for inactive account %d", account.id)
            raise AuthError(ErrorKind.ACCOUNT_INACTIVE)

        if not verify_password(password, account.hashed_password):
            self._record_failure(email, now, "wrong password")
            raise AuthError(ErrorKind.INVALID_CREDENTIALS)

        self._store.delete_login_attempt(email)
        pair = self._issuer.issue(account.id, account.role, remember_me, now=now)
        self._store.create_session(
            Session(
                account_id=account.id,
                access_token=pair.access_token,
                refresh_token=pair.refresh_token,
                access_token_expires_at=pair.access_token_expires_at,
                refresh_token_expires_at=pair.refresh_token_expires_at,
                role=account.role,
                persistent=remember_me,
            )
        )
        logger.info("Login for account %d (persistent=%s)", account.id, remember_me)
        return LoginResult(
            account=redact(account),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            persistent=remember_me,
            access_token_expires_at=pair.access_token_expires_at,
            refresh_token_expires_at=pair.refresh_token_expires_at,
        )

    @returns_outcome
    def logout(self, token: str) -> int:
        """Delete every session holding ``token`` as access or refresh token.

        Idempotent: an unknown token is not an error. Returns sessions removed.
        """
        removed = self._store.delete_sessions_by_token(token)
        if removed:
            logger.info("Logout removed %d session(s)", removed)
        return removed

    @returns_outcome
    def refresh(self, refresh_token: str) -> RefreshResult:
        """Rotate a session's token pair.

        Lifetimes follow the session's stored persistence flag. The role is
        carried over from the presented token's claims. A refresh token whose
        signature has expired also takes its session down, so a replayed
        expired token cannot bring the session back.
        """
        try:
            claims = self._issuer.verify_refresh(refresh_token)
        except TokenExpiredError:
            self._drop_session_for(refresh_token)
            raise

        session = self._store.get_session_by_refresh_token(refresh_token)
        if session is None:
            raise AuthError(ErrorKind.INVALID_REFRESH_TOKEN)

        now = self._now()
        if session.refresh_token_expires_at < now:
            self._store.delete_session(session.id)
            logger.info("Session %d dropped: stored refresh expiry passed", session.id)
            raise AuthError(ErrorKind.INVALID_REFRESH_TOKEN)

        pair = self._issuer.issue(claims.account_id, claims.role, session.persistent, now=now)
        if not self._store.rotate_session(session.id, refresh_token, pair):
            raise AuthError(ErrorKind.INVALID_REFRESH_TOKEN)
        return RefreshResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            persistent=session.persistent,
            access_token_expires_at=pair.access_token_expires_at,
            refresh_token_expires_at=pair.refresh_token_expires_at,
        )

    # ------------------------------------------------------------------
    # Password flows
    # ------------------------------------------------------------------

    @returns_outcome
    def forgot_password(self, email: str) -> None:
        """Issue a fresh reset token and email it.

        Unlike signup and login, an unknown email is reported as
        user_not_found. Earlier reset tokens are left alone to expire.
        """
        email = normalize_email(email)
        account = self._store.get_account_by_email(email)
        if account is None:
            raise AuthError(ErrorKind.USER_NOT_FOUND)

        raw_token = generate_transient_token()
        self._store.create_transient_token(
            TransientToken(
                namespace=TokenNamespace.RESET,
                account_id=account.id,
                token=raw_token,
                expires_at=self._now() + timedelta(minutes=self._settings.reset_token_ttl_minutes),
            )
        )
        self._deliver(self._mailer.send_password_reset_email, account.email, raw_token)
        logger.info("Password reset issued for account %d", account.id)

    @returns_outcome
    def reset_password(self, token: str, new_password: str) -> None:
        """Replace the password of the token's owner and consume the token."""
        record = self._load_live_token(TokenNamespace.RESET, token, ErrorKind.INVALID_RESET_TOKEN)
        hashed = hash_password(new_password, self._settings.bcrypt_rounds)
        with self._store.transaction() as tx:
            account = self._store.get_account_by_id(record.account_id, conn=tx)
            if account is None:
                raise AuthError(ErrorKind.USER_NOT_FOUND)
            if not self._store.delete_transient_token(TokenNamespace.RESET, record.id, conn=tx):
                raise AuthError(ErrorKind.INVALID_RESET_TOKEN)
            self._store.update_account(account.id, conn=tx, hashed_password=hashed)
        logger.info("Password reset completed for account %d", account.id)

    @returns_outcome
    def change_password(self, account_id: int, current_password: str, new_password: str) -> None:
        """Change the password of a logged-in account.

        The confirmation notice is best effort: a mail outage must not undo
        or fail a password change that already happened.
        """
        account = self._store.get_account_by_id(account_id)
        if account is None:
            raise AuthError(ErrorKind.USER_NOT_FOUND)
        if not verify_password(current_password, account.hashed_password):
            raise AuthError(ErrorKind.INCORRECT_PASSWORD)
        self._store.update_account(
            account.id, hashed_password=hash_password(new_password, self._settings.bcrypt_rounds)
        )
        logger.info("Password changed for account %d", account.id)
        try:
            self._mailer.send_password_changed_notice(account.email)
        except EmailDeliveryError as exc:
            logger.warning("Password-changed notice not delivered for account %d: %s", account.id, exc)

    @returns_outcome
    def get_account(self, account_id: int) -> AccountView:
        account = self._store.get_account_by_id(account_id)
        if account is None:
            raise AuthError(ErrorKind.USER_NOT_FOUND)
        return redact(account)

    @returns_outcome
    def update_profile(self, account_id: int, name: str, company_name: str | None = None) -> AccountView:
        """Change the display name, and the company when one is given.

        The email is never editable here.
        """
        fields = {"name": name}
        if company_name is not None:
            fields["company_name"] = company_name
        with self._store.transaction() as tx:
            if not self._store.update_account(account_id, conn=tx, **fields):
                raise AuthError(ErrorKind.USER_NOT_FOUND)
            account = self._store.get_account_by_id(account_id, conn=tx)
        logger.info("Profile updated for account %d", account_id)
        return redact(account)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_unverified_accounts(self) -> int:
        """Delete unverified accounts that no longer hold a live verification token.

        Each account's check-and-delete runs in its own transaction. On
        SQLite that serializes against a concurrent signup's write; on
        databases with weaker isolation a token committed between the check
        and the delete can still lose its account. Safe to interrupt and
        re-run. Returns the number of accounts deleted.
        """
        now = self._now()
        deleted = 0
        for account_id in self._store.list_unverified_account_ids():
            with self._store.transaction() as tx:
                account = self._store.get_account_by_id(account_id, conn=tx)
                if account is None or account.is_email_verified:
                    continue
                live = self._store.find_live_transient_token(TokenNamespace.VERIFICATION, account_id, now, conn=tx)
                if live is not None:
                    continue
                self._store.delete_account(account_id, conn=tx)
                deleted += 1
        return deleted

    def purge_expired(self) -> MaintenanceReport:
        """Remove expired transient tokens, stale login counters and dead sessions."""
        now = self._now()
        retention = timedelta(hours=self._settings.login_attempt_retention_hours)
        return MaintenanceReport(
            transient_tokens_purged=self._store.purge_expired_transient_tokens(now),
            login_attempts_purged=self._store.purge_login_attempts(now - retention),
            sessions_purged=self._store.purge_expired_sessions(now),
        )

    def run_maintenance(self) -> MaintenanceReport:
        """The periodic sweep: account cleanup first, then expiry purges.

        Cleanup runs before the token purge; it only looks at unexpired
        tokens, so the order does not change which accounts are removed.
        """
        deleted = self.cleanup_unverified_accounts()
        purged = self.purge_expired()
        report = MaintenanceReport(
            unverified_accounts_deleted=deleted,
            transient_tokens_purged=purged.transient_tokens_purged,
            login_attempts_purged=purged.login_attempts_purged,
            sessions_purged=purged.sessions_purged,
        )
        logger.info(
            "Maintenance: %d unverified account(s) deleted, %d token(s), %d counter(s), %d session(s) purged",
            report.unverified_accounts_deleted,
            report.transient_tokens_purged,
            report.login_attempts_purged,
            report.sessions_purged,
        )
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_live_token(self, namespace: TokenNamespace, raw_token: str, invalid: ErrorKind) -> TransientToken:
        """Fetch a transient token, deleting and rejecting it if expired.

        Absent and expired tokens raise the same error kind.
        """
        record = self._store.get_transient_token(namespace, raw_token)
        if record is None:
            raise AuthError(invalid)
        if record.expires_at < self._now():
            self._store.delete_transient_token(namespace, record.id)
            raise AuthError(invalid)
        return record

    def _record_failure(self, email: str, now: datetime, reason: str) -> None:
        count = self._store.increment_login_attempt(email, now)
        logger.warning("Failed login for %s (%s), attempt %d", redact_email(email), reason, count)

    def _drop_session_for(self, refresh_token: str) -> None:
        try:
            session = self._store.get_session_by_refresh_token(refresh_token)
            if session is not None:
                self._store.delete_session(session.id)
                logger.info("Session %d dropped: refresh token expired", session.id)
        except SQLAlchemyError:
            logger.exception("Could not drop session for expired refresh token")

    @staticmethod
    def _deliver(send: Callable[..., None], *args) -> None:
        try:
            send(*args)
        except EmailDeliveryError as exc:
            raise AuthError(ErrorKind.EMAIL_FAILED) from exc


__all__ = [
    "AuthService",
    "LoginResult",
    "MaintenanceReport",
    "Outcome",
    "RefreshResult",
    "SignupResult",
    "redact",
]
