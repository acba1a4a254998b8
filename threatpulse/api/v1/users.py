"""Administrative user management (requires the manage-users capability)."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from threatpulse.api.v1.auth import require_permission, to_http_exception
from threatpulse.core.database import get_db
from threatpulse.core.errors import AuthError, ProfileMissing
from threatpulse.models import Account
from threatpulse.schemas.auth import Identity, RoleName
from threatpulse.schemas.users import UserCreateRequest, UsersListResponse, UserUpdateRequest
from threatpulse.services import accounts

logger = logging.getLogger(__name__)
router = APIRouter()

AdminAccount = Annotated[Account, Depends(require_permission("can_manage_users"))]


def _load(db: Session, user_id: str) -> Account:
    account = accounts.get_account(db, user_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return account


def _identities(items: list[Account]) -> list[Identity]:
    # Rows with a broken profile are skipped here; they still count in the totals.
    result: list[Identity] = []
    for account in items:
        try:
            result.append(accounts.resolve_identity(account))
        except ProfileMissing:
            continue
    return result


@router.get("", response_model=UsersListResponse)
def list_users(
    _admin: AdminAccount,
    db: Annotated[Session, Depends(get_db)],
    role: RoleName | None = None,
    is_active: Annotated[bool | None, Query(alias="isActive")] = None,
    search: Annotated[str | None, Query(max_length=255)] = None,
) -> UsersListResponse:
    """List accounts, optionally filtered by role, status and a name/email search."""
    items = accounts.list_accounts(db, role=role, is_active=is_active, search=search)
    return UsersListResponse(
        users=_identities(items),
        total=len(items),
        active=sum(1 for a in items if a.is_active),
    )


@router.post("", response_model=Identity, status_code=status.HTTP_201_CREATED)
def create_user(
    body: UserCreateRequest,
    admin: AdminAccount,
    db: Annotated[Session, Depends(get_db)],
) -> Identity:
    try:
        account = accounts.create_account(db, body.email, body.password, body.name, role=body.role)
        identity = accounts.resolve_identity(account)
    except AuthError as e:
        raise to_http_exception(e) from e
    logger.info("User created by admin", extra={"admin_id": admin.id, "account_id": account.id})
    return identity


@router.patch("/{user_id}", response_model=Identity)
def update_user(
    user_id: str,
    body: UserUpdateRequest,
    admin: AdminAccount,
    db: Annotated[Session, Depends(get_db)],
) -> Identity:
    """Edit email, name, role or active flag. Admins cannot deactivate themselves."""
    account = _load(db, user_id)
    if account.id == admin.id and body.is_active is False:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot deactivate your own account.",
        )
    try:
        updated = accounts.update_account(
            db,
            account,
            email=body.email,
            name=body.name,
            role=body.role,
            is_active=body.is_active,
        )
        return accounts.resolve_identity(updated)
    except AuthError as e:
        raise to_http_exception(e) from e


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: str,
    admin: AdminAccount,
    db: Annotated[Session, Depends(get_db)],
) -> None:
    """Permanently delete an account. Prefer deactivation; this cannot be undone."""
    account = _load(db, user_id)
    if account.id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot delete your own account.",
        )
    accounts.delete_account(db, account)
