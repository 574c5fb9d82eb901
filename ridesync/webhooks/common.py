from __future__ import annotations

import json
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse
from loguru import logger


async def read_json_payload(request: Request, tag: str) -> dict[str, Any] | None:
    """Parse the request body as a JSON object, or return None when it is not one."""
    try:
        body = await request.body()
        payload = json.loads(body.decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error(f"{tag} Failed to parse webhook payload: {e}")
        return None
    if not isinstance(payload, dict):
        logger.error(f"{tag} Webhook payload is not a JSON object: {type(payload).__name__}")
        return None
    return payload


def invalid_payload_response() -> JSONResponse:
    # Still 200 so the provider does not retry a payload we can never parse
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"status": "error", "reason": "invalid_payload"},
    )


def acknowledged(**extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "acknowledged", **extra})
