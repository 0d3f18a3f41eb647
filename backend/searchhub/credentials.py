from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker

from searchhub import crud
from searchhub.models import ConnectedAccount

ACCOUNT_STATUSES = ("connected", "disconnected", "error")


@dataclass(slots=True)
class Account:
    id: str
    platform: str
    identifier: str
    display_name: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    status: str = "connected"  # connected | disconnected | error
    extra: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self, *, now: datetime | None = None, leeway_seconds: int = 60) -> bool:
        if self.expires_at is None:
            return False
        current = now or datetime.now(timezone.utc)
        expires_at = self.expires_at if self.expires_at.tzinfo else self.expires_at.replace(tzinfo=timezone.utc)
        return (expires_at - current).total_seconds() <= leeway_seconds


def new_account_id() -> str:
    return uuid4().hex


class CredentialStore(Protocol):
    def get(self, account_id: str) -> Account | None: ...

    def find(self, platform: str, identifier: str) -> Account | None: ...

    def list_accounts(self, platform: str | None = None) -> list[Account]: ...

    def add(self, account: Account) -> Account: ...

    def update_tokens(
        self,
        account_id: str,
        *,
        access_token: str | None,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
    ) -> Account | None: ...

    def set_status(self, account_id: str, status: str) -> bool: ...

    def remove(self, account_id: str) -> bool: ...


def _check_status(status: str) -> str:
    if status not in ACCOUNT_STATUSES:
        raise ValueError(f"Unknown account status: {status}")
    return status


class MemoryCredentialStore:
    """Process-local store; callers always get copies, never the stored record."""

    def __init__(self, accounts: list[Account] | None = None):
        self._lock = Lock()
        self._accounts: dict[str, Account] = {}
        for account in accounts or []:
            self._accounts[account.id] = replace(account, extra=dict(account.extra))

    def get(self, account_id: str) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            return replace(account, extra=dict(account.extra)) if account else None

    def find(self, platform: str, identifier: str) -> Account | None:
        with self._lock:
            for account in self._accounts.values():
                if account.platform == platform and account.identifier == identifier:
                    return replace(account, extra=dict(account.extra))
        return None

    def list_accounts(self, platform: str | None = None) -> list[Account]:
        with self._lock:
            return [
                replace(account, extra=dict(account.extra))
                for account in self._accounts.values()
                if platform is None or account.platform == platform
            ]

    def add(self, account: Account) -> Account:
        _check_status(account.status)
        with self._lock:
            for existing in self._accounts.values():
                if existing.platform == account.platform and existing.identifier == account.identifier:
                    account = replace(account, id=existing.id, created_at=existing.created_at)
                    break
            else:
                previous = self._accounts.get(account.id)
                if previous is not None:
                    account = replace(account, created_at=previous.created_at)
            self._accounts[account.id] = replace(account, extra=dict(account.extra))
            return replace(account, extra=dict(account.extra))

    def update_tokens(
        self,
        account_id: str,
        *,
        access_token: str | None,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
    ) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            account.access_token = access_token
            if refresh_token:
                account.refresh_token = refresh_token
            account.expires_at = expires_at
            return replace(account, extra=dict(account.extra))

    def set_status(self, account_id: str, status: str) -> bool:
        _check_status(status)
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return False
            account.status = status
            return True

    def remove(self, account_id: str) -> bool:
        with self._lock:
            return self._accounts.pop(account_id, None) is not None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_account(row: ConnectedAccount) -> Account:
    access_token, refresh_token = crud.decrypt_account_tokens(row)
    return Account(
        id=row.id,
        platform=row.provider,
        identifier=row.identifier,
        display_name=row.display_name,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=_as_utc(row.expires_at),
        status=row.status,
        extra=dict(row.extra or {}),
        created_at=_as_utc(row.created_at) or datetime.now(timezone.utc),
    )


class SqlCredentialStore:
    """SQLAlchemy-backed store; tokens are Fernet-encrypted when a key is configured."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def get(self, account_id: str) -> Account | None:
        with self._session_factory() as db:
            row = crud.get_account(db, account_id=account_id)
            return _to_account(row) if row else None

    def find(self, platform: str, identifier: str) -> Account | None:
        with self._session_factory() as db:
            row = crud.get_account_by_provider_identifier(db, provider=platform, identifier=identifier)
            return _to_account(row) if row else None

    def list_accounts(self, platform: str | None = None) -> list[Account]:
        with self._session_factory() as db:
            return [_to_account(row) for row in crud.list_accounts(db, provider=platform)]

    def add(self, account: Account) -> Account:
        _check_status(account.status)
        with self._session_factory() as db:
            row = crud.upsert_account(
                db,
                account_id=account.id,
                provider=account.platform,
                identifier=account.identifier,
                display_name=account.display_name,
                access_token=account.access_token,
                refresh_token=account.refresh_token,
                expires_at=account.expires_at,
                status=account.status,
                extra=account.extra,
            )
            return _to_account(row)

    def update_tokens(
        self,
        account_id: str,
        *,
        access_token: str | None,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
    ) -> Account | None:
        with self._session_factory() as db:
            row = crud.update_account_tokens(
                db,
                account_id=account_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
            )
            return _to_account(row) if row else None

    def set_status(self, account_id: str, status: str) -> bool:
        _check_status(status)
        with self._session_factory() as db:
            return crud.set_account_status(db, account_id=account_id, status=status)

    def remove(self, account_id: str) -> bool:
        with self._session_factory() as db:
            return crud.delete_connected_account(db, account_id=account_id)
