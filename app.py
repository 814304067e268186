# app.py
# FastAPI API for the finance tracker Telegram Mini App (+ optional aiogram bot polling).
# Telegram WebApp auth (initData) -> session token -> accounts / categories / transactions.

from __future__ import annotations

import asyncio
import base64
import dataclasses
import datetime as dt
import hashlib
import hmac
import json
import logging
import os
import secrets
import sqlite3
import time
import traceback
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import finance_models as fm
from telegram_auth import DEFAULT_MAX_AGE_SEC, Mode

BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")


def default_log_level(app_env: Optional[str]) -> str:
    if (app_env or "").strip().lower() in ("prod", "production"):
        return "WARNING"
    return "INFO"


if not logging.getLogger().handlers:
    _default_level = default_log_level(os.getenv("APP_ENV"))
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", _default_level).strip().upper() or _default_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()


# ---------------------------
# Config
# ---------------------------

@dataclasses.dataclass
class Config:
    BOT_TOKEN: str
    APP_ENV: str
    DB_PATH: str
    SESSION_SECRET: str
    SESSION_TTL_SEC: int = 24 * 3600
    INIT_DATA_MAX_AGE_SEC: int = DEFAULT_MAX_AGE_SEC
    FRONTEND_URL: str = "http://localhost:3003"
    WEBAPP_URL: str = ""
    BOT_POLLING: bool = False

    @property
    def mode(self) -> Mode:
        return Mode.parse(self.APP_ENV)

    @property
    def is_production(self) -> bool:
        return self.mode is Mode.PRODUCTION


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off", "")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def load_config() -> Config:
    bot_token = os.getenv("BOT_TOKEN", "").strip()
    if not bot_token:
        raise RuntimeError("BOT_TOKEN is required in .env / environment")

    app_env = os.getenv("APP_ENV", "development").strip() or "development"
    try:
        mode = Mode.parse(app_env)
    except ValueError as e:
        raise RuntimeError(f"APP_ENV: {e}")

    session_secret = os.getenv("SESSION_SECRET", "").strip()
    if not session_secret:
        if mode is Mode.PRODUCTION:
            raise RuntimeError("SESSION_SECRET is required in production")
        session_secret = secrets.token_urlsafe(32)
        logger.warning("SESSION_SECRET is not set, using a random one (sessions reset on restart)")

    db_path = os.getenv("DB_PATH", "db.sqlite3").strip() or "db.sqlite3"
    if not os.path.isabs(db_path):
        db_path = str(BASE_DIR / db_path)

    return Config(
        BOT_TOKEN=bot_token,
        APP_ENV=mode.value,
        DB_PATH=db_path,
        SESSION_SECRET=session_secret,
        SESSION_TTL_SEC=_env_int("SESSION_TTL_SEC", 24 * 3600),
        INIT_DATA_MAX_AGE_SEC=_env_int("INIT_DATA_MAX_AGE_SEC", DEFAULT_MAX_AGE_SEC),
        FRONTEND_URL=os.getenv("FRONTEND_URL", "http://localhost:3003").strip(),
        WEBAPP_URL=os.getenv("WEBAPP_URL", "").strip(),
        BOT_POLLING=_env_bool("BOT_POLLING", False),
    )


# ---------------------------
# DB helpers (sqlite3)
# ---------------------------

def db_exec(cfg: Config, sql: str, params: tuple = ()) -> None:
    with fm.db_connect(cfg) as conn:
        conn.execute(sql, params)
        conn.commit()


def db_fetchone(cfg: Config, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
    with fm.db_connect(cfg) as conn:
        return conn.execute(sql, params).fetchone()


def db_fetchall(cfg: Config, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
    with fm.db_connect(cfg) as conn:
        return conn.execute(sql, params).fetchall()


def init_db(cfg: Config) -> None:
    with fm.db_connect(cfg) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id INTEGER UNIQUE NOT NULL,
                username TEXT NULL,
                first_name TEXT NULL,
                last_name TEXT NULL,
                language_code TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS system_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                level TEXT NOT NULL,
                source TEXT NOT NULL,
                message TEXT NOT NULL,
                details_json TEXT NULL,
                trace TEXT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_system_logs_created
                ON system_logs(created_at);
            """
        )
        conn.commit()
        fm.init_finance_db(conn)


def user_to_dict(u: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": u["id"],
        "telegram_id": u["telegram_id"],
        "username": u["username"],
        "first_name": u["first_name"],
        "last_name": u["last_name"],
        "language_code": u["language_code"],
        "created_at": u["created_at"],
        "updated_at": u["updated_at"],
    }


# ---------------------------
# Monitoring logs
# ---------------------------

def log_system_log(
    cfg: Config,
    level: str,
    source: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    trace: Optional[str] = None,
) -> None:
    db_exec(
        cfg,
        """
        INSERT INTO system_logs (level, source, message, details_json, trace, created_at)
        VALUES (?, ?, ?, ?, ?, ?);
        """,
        (
            level,
            source,
            message,
            json.dumps(details, ensure_ascii=False) if details is not None else None,
            trace,
            fm.iso_now(),
        ),
    )


# ---------------------------
# Session token (HMAC signed JSON) - self-contained (no external JWT deps)
# ---------------------------

def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)


def make_session_token(payload: Dict[str, Any], secret: str) -> str:
    payload_bytes = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    body = _b64url_encode(payload_bytes)
    sig = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest()
    return f"{body}.{_b64url_encode(sig)}"


def issue_session_token(cfg: Config, user: sqlite3.Row) -> str:
    now = int(time.time())
    return make_session_token(
        {
            "sub": int(user["id"]),
            "telegram_id": int(user["telegram_id"]),
            "iat": now,
            "exp": now + int(cfg.SESSION_TTL_SEC),
        },
        cfg.SESSION_SECRET,
    )


def verify_session_token(token: str, secret: str) -> Dict[str, Any]:
    try:
        body, sig = token.split(".", 1)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token format")

    expected = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest()
    try:
        provided_sig = _b64url_decode(sig)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token signature")

    if not hmac.compare_digest(provided_sig, expected):
        raise HTTPException(status_code=401, detail="Invalid token signature")

    try:
        payload = json.loads(_b64url_decode(body).decode("utf-8"))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    if not isinstance(payload, dict):
        raise HTTPException(status_code=401, detail="Invalid token payload")

    try:
        exp = int(payload.get("exp", 0))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token payload")
    if not exp or int(time.time()) > exp:
        raise HTTPException(status_code=401, detail="Token expired")
    return payload


# ---------------------------
# API Auth dependencies
# ---------------------------

def get_cfg(request: Request) -> Config:
    return request.app.state.cfg


def get_bearer_token(request: Request) -> str:
    h = request.headers.get("Authorization", "").strip()
    if not h.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization Bearer token")
    return h.split(" ", 1)[1].strip()


def get_current_user(request: Request) -> sqlite3.Row:
    cfg = get_cfg(request)
    payload = verify_session_token(get_bearer_token(request), cfg.SESSION_SECRET)
    try:
        user_id = int(payload.get("sub", 0))
    except (TypeError, ValueError):
        user_id = 0
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    u = db_fetchone(cfg, "SELECT * FROM users WHERE id=?;", (user_id,))
    if not u:
        raise HTTPException(status_code=404, detail="User not found")
    return u


# ---------------------------
# FastAPI app
# ---------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: Config = app.state.cfg
    init_db(cfg)
    logger.info("Finance tracker API started (env=%s, db=%s)", cfg.APP_ENV, cfg.DB_PATH)

    polling_task = None
    bot = None
    if cfg.BOT_POLLING:
        import finance_bot

        bot, dp = finance_bot.build_bot(cfg)
        polling_task = asyncio.create_task(dp.start_polling(bot))

    try:
        yield
    finally:
        if polling_task is not None:
            polling_task.cancel()
            with suppress(asyncio.CancelledError):
                await polling_task
        if bot is not None:
            await bot.session.close()
        logger.info("Finance tracker API stopped")


def _build_cors_allow_origins(cfg: Config) -> List[str]:
    origins: List[str] = ["http://localhost:3000", "http://localhost:3003"]
    for candidate in (cfg.FRONTEND_URL, cfg.WEBAPP_URL):
        value = (candidate or "").strip().rstrip("/")
        if not value or value == "*":
            continue
        if value not in origins:
            origins.append(value)
    return origins


def build_app(cfg: Config) -> FastAPI:
    app = FastAPI(title="Finance Tracker API", version="1.0.0", lifespan=lifespan)
    app.state.cfg = cfg

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_build_cors_allow_origins(cfg),
        allow_origin_regex=r"^http://localhost:\d{4}$",
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        details = {"path": request.url.path, "method": request.method}
        if request.client:
            details["client"] = request.client.host
        trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
        try:
            log_system_log(cfg, "ERROR", "api", str(exc), details=details, trace=trace)
        except sqlite3.Error:
            logger.exception("Failed to persist system log")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - STARTED_AT, 3),
            "environment": cfg.APP_ENV,
        }

    import auth_routes
    import finance_routes

    app.include_router(auth_routes.router)
    app.include_router(finance_routes.router)
    if not cfg.is_production:
        app.include_router(auth_routes.dev_router)
        app.include_router(finance_routes.dev_router)
    return app


CFG = load_config()
APP = build_app(CFG)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:APP",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3001")),
        reload=False,
    )
