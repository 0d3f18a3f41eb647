from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from searchhub.models import ConnectedAccount
from searchhub.services.encryption import decrypt_optional, encrypt_optional


def list_accounts(db: Session, *, provider: str | None = None) -> list[ConnectedAccount]:
    stmt = select(ConnectedAccount).order_by(ConnectedAccount.created_at, ConnectedAccount.id)
    if provider is not None:
        stmt = stmt.where(ConnectedAccount.provider == provider.lower().strip())
    return list(db.scalars(stmt))


def get_account(db: Session, *, account_id: str) -> ConnectedAccount | None:
    return db.get(ConnectedAccount, account_id)


def get_account_by_provider_identifier(
    db: Session,
    *,
    provider: str,
    identifier: str,
) -> ConnectedAccount | None:
    provider_norm = provider.lower().strip()
    identifier_norm = identifier.strip()
    return db.scalar(
        select(ConnectedAccount).where(
            ConnectedAccount.provider == provider_norm,
            ConnectedAccount.identifier == identifier_norm,
        )
    )


def upsert_account(
    db: Session,
    *,
    account_id: str,
    provider: str,
    identifier: str,
    display_name: str | None,
    access_token: str | None,
    refresh_token: str | None,
    expires_at: datetime | None,
    status: str,
    extra: dict[str, str] | None = None,
) -> ConnectedAccount:
    existing = get_account_by_provider_identifier(db, provider=provider, identifier=identifier)
    if existing is None:
        # re-authorizing an account as a different user keeps its id
        existing = get_account(db, account_id=account_id)
    if existing is None:
        existing = ConnectedAccount(id=account_id, provider=provider.lower().strip())
    existing.identifier = identifier.strip()
    existing.display_name = display_name
    existing.access_token = encrypt_optional(access_token)
    existing.refresh_token = encrypt_optional(refresh_token)
    existing.expires_at = expires_at
    existing.status = status
    existing.extra = dict(extra or {})
    db.add(existing)
    db.commit()
    db.refresh(existing)
    return existing


def update_account_tokens(
    db: Session,
    *,
    account_id: str,
    access_token: str | None,
    refresh_token: str | None,
    expires_at: datetime | None,
) -> ConnectedAccount | None:
    account = get_account(db, account_id=account_id)
    if account is None:
        return None
    account.access_token = encrypt_optional(access_token)
    # Providers that do not rotate refresh tokens omit them from refresh responses.
    if refresh_token:
        account.refresh_token = encrypt_optional(refresh_token)
    account.expires_at = expires_at
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


def set_account_status(db: Session, *, account_id: str, status: str) -> bool:
    account = get_account(db, account_id=account_id)
    if account is None:
        return False
    account.status = status
    db.add(account)
    db.commit()
    return True


def delete_connected_account(db: Session, *, account_id: str) -> bool:
    account = get_account(db, account_id=account_id)
    if account is None:
        return False
    db.delete(account)
    db.commit()
    return True


def decrypt_account_tokens(account: ConnectedAccount) -> tuple[str | None, str | None]:
    return decrypt_optional(account.access_token), decrypt_optional(account.refresh_token)
