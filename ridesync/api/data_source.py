from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ridesync.api.dependencies.auth import RequestContext, get_request_context
from ridesync.db.models import User
from ridesync.db.session import get_db
from ridesync.ingestion.links import get_provider_user_id
from ridesync.integrations.providers import Provider

router = APIRouter(prefix="/data-source", tags=["data-source"])


class DataSourcePreference(BaseModel):
    provider: Provider


@router.get("/preference")
def get_preference(
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    user = db.get(User, ctx.user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return {"activeDataSource": user.active_data_source}


@router.post("/preference")
def set_preference(
    body: DataSourcePreference,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Choose which linked provider webhook imports are taken from.

    Raises:
        HTTPException: 400 when the provider is not linked, 404 for unknown users
    """
    user = db.get(User, ctx.user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    if get_provider_user_id(db, ctx.user_id, body.provider) is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{body.provider.value} account not linked")

    user.active_data_source = body.provider.value
    db.commit()
    logger.info(f"[LINKS] Active data source set: user_id={ctx.user_id}, provider={body.provider.value}")
    return {"success": True, "activeDataSource": user.active_data_source}
