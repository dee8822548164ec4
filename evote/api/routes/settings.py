"""Election settings endpoints."""
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Request, status

from evote.api.auth import require_admin
from evote.api.models import SettingCreate, SettingUpdate

router = APIRouter(prefix="/settings", tags=["Settings"])


@router.get("")
async def get_settings(request: Request):
    values = await request.app.state.settings_registry.all()
    return {"success": True, "data": values}


@router.get("/{key}")
async def get_setting(request: Request, key: str):
    setting = await request.app.state.settings_registry.get(key)
    return {"success": True, "data": setting.to_dict()}


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_admin)])
async def create_setting(request: Request, body: SettingCreate):
    setting = await request.app.state.settings_registry.create(
        body.key, body.value, body.description
    )
    return {"success": True, "data": setting.to_dict()}


@router.put("", dependencies=[Depends(require_admin)])
async def update_settings(request: Request, values: Dict[str, Any] = Body(...)):
    updated = await request.app.state.settings_registry.update_many(values)
    return {
        "success": True,
        "message": "Settings updated successfully",
        "data": [s.to_dict() for s in updated],
    }


@router.put("/{key}", dependencies=[Depends(require_admin)])
async def update_setting(request: Request, key: str, body: SettingUpdate):
    setting = await request.app.state.settings_registry.update(key, body.value)
    return {"success": True, "data": setting.to_dict()}


@router.delete("/{key}", dependencies=[Depends(require_admin)])
async def delete_setting(request: Request, key: str):
    await request.app.state.settings_registry.delete(key)
    return {"success": True, "message": "Setting deleted successfully"}
