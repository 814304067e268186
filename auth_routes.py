"""auth_routes.py

Telegram WebApp login and session endpoints.

app.py owns config, DB helpers and the session token; they are imported lazily
inside the handlers because app.py includes this router while it is still
being imported.

`dev_router` is only mounted when the app runs in development mode.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

import finance_models as m
import telegram_auth as ta

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])
dev_router = APIRouter(prefix="/api/auth", tags=["auth", "dev"])

MOCK_USER = {"id": 123456789, "first_name": "Test User", "username": "testuser"}


def _cfg(request: Request):
    return request.app.state.cfg


def _current_user(request: Request) -> sqlite3.Row:
    from app import get_current_user  # lazy
    return get_current_user(request)


class AuthTelegramIn(BaseModel):
    initData: str = Field(..., min_length=1, description="Telegram WebApp initData string")


def rejection_detail(cfg, result: ta.Invalid) -> str:
    if cfg.is_production:
        return "Invalid Telegram auth"
    return f"Invalid Telegram auth: {result.reason.value}"


def verify_init_data(cfg, init_data: str) -> ta.VerificationResult:
    return ta.verify(
        init_data,
        cfg.BOT_TOKEN,
        cfg.INIT_DATA_MAX_AGE_SEC,
        mode=cfg.mode,
    )


@router.post("/telegram")
def auth_telegram(body: AuthTelegramIn, request: Request):
    from app import issue_session_token, user_to_dict  # lazy

    cfg = _cfg(request)
    result = verify_init_data(cfg, body.initData)
    if isinstance(result, ta.Invalid):
        logger.warning("Telegram auth rejected: %s (%s)", result.reason.value, result.detail)
        raise HTTPException(status_code=401, detail=rejection_detail(cfg, result))
    if result.identity is None:
        logger.warning("Telegram auth rejected: no user in initData")
        raise HTTPException(status_code=401, detail="Invalid Telegram auth")
    if result.bypassed:
        logger.info("Development mode: signature check skipped for mock initData")

    profile = ta.format_user_for_db(result.identity)
    with m.db_connect(cfg) as conn:
        user, created = m.get_or_create_user(conn, profile)
    if created:
        logger.info("Created new user for Telegram ID %s", profile["telegram_id"])

    return {
        "token": issue_session_token(cfg, user),
        "user": user_to_dict(user),
        "expires_in": int(cfg.SESSION_TTL_SEC),
    }


@router.get("/me")
def me(request: Request, u: sqlite3.Row = Depends(_current_user)):
    from app import user_to_dict  # lazy

    with m.db_connect(_cfg(request)) as conn:
        total = m.get_total_balance(conn, int(u["id"]))
    return {"user": user_to_dict(u), "total_balance": total}


@router.post("/refresh")
def refresh(request: Request, u: sqlite3.Row = Depends(_current_user)):
    from app import issue_session_token  # lazy

    cfg = _cfg(request)
    return {"token": issue_session_token(cfg, u), "expires_in": int(cfg.SESSION_TTL_SEC)}


@dev_router.post("/mock")
def auth_mock(request: Request) -> Dict[str, Any]:
    """Signed initData for the fixed test user (development only)."""
    cfg = _cfg(request)
    try:
        init_data = ta.synthesize(MOCK_USER, cfg.BOT_TOKEN, mode=cfg.mode)
    except RuntimeError:
        raise HTTPException(status_code=404, detail="Not Found")

    result = verify_init_data(cfg, init_data)
    if isinstance(result, ta.Invalid) or result.identity is None:
        raise HTTPException(status_code=500, detail="Failed to create mock authentication")

    return {
        "initData": init_data,
        "user": result.identity.model_dump(exclude_none=True),
        "note": "This is mock data for development only",
    }
