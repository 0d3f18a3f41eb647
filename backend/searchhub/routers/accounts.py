from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from searchhub.routers.connectors import get_manager
from searchhub.schemas import AccountOut, AuthenticateRequest, AuthResult, UserInfo
from searchhub.services.aggregator import AggregationManager

router = APIRouter(prefix="/accounts", tags=["accounts"])


def _public(result: AuthResult) -> AuthResult:
    # Tokens stay server-side.
    return result.model_copy(update={"access_token": None, "refresh_token": None})


@router.get("", response_model=list[AccountOut])
def list_accounts(platform: Optional[str] = None, manager: AggregationManager = Depends(get_manager)):
    return [AccountOut.model_validate(account) for account in manager.list_accounts(platform)]


@router.delete("/{account_id}")
def delete_account(account_id: str, manager: AggregationManager = Depends(get_manager)):
    if not manager.remove_account(account_id):
        raise HTTPException(status_code=404, detail="Account not found")
    return {"ok": True}


@router.post("/validate")
async def validate_all(manager: AggregationManager = Depends(get_manager)):
    return await manager.validate_all_connections()


@router.post("/{platform}/authenticate", response_model=AuthResult)
async def authenticate(
    platform: str,
    payload: AuthenticateRequest,
    account_id: Optional[str] = None,
    manager: AggregationManager = Depends(get_manager),
):
    if platform.lower().strip() not in manager.list_connectors():
        raise HTTPException(status_code=404, detail="Connector not loaded")
    return _public(await manager.authenticate_platform(platform, payload.code, account_id=account_id))


@router.post("/{account_id}/refresh", response_model=AuthResult)
async def refresh(account_id: str, manager: AggregationManager = Depends(get_manager)):
    if manager.store.get(account_id) is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return _public(await manager.refresh_platform_token(account_id))


@router.get("/{account_id}/user-info", response_model=UserInfo)
async def user_info(account_id: str, manager: AggregationManager = Depends(get_manager)):
    if manager.store.get(account_id) is None:
        raise HTTPException(status_code=404, detail="Account not found")
    info = await manager.get_user_info(account_id)
    if info is None:
        raise HTTPException(status_code=502, detail="Could not fetch user info")
    return info


@router.get("/{account_id}/test")
async def test_connection(account_id: str, manager: AggregationManager = Depends(get_manager)):
    if manager.store.get(account_id) is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return {"ok": await manager.test_platform_connection(account_id)}
