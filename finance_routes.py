"""finance_routes.py

FastAPI routes for accounts, categories and transactions.

All rules live in finance_models; this module validates the request shape,
opens a connection and maps model errors to HTTP codes:

    KeyError      -> 404
    ConflictError -> 409
    ValueError    -> 400
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request
from pydantic import BaseModel, Field

import finance_models as m

router = APIRouter(prefix="/api")
dev_router = APIRouter(prefix="/api")

COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


# ---------------------------
# Dependencies
# ---------------------------


def _current_user(request: Request) -> sqlite3.Row:
    from app import get_current_user  # lazy
    return get_current_user(request)


@contextmanager
def _conn(request: Request) -> Iterator[sqlite3.Connection]:
    conn = m.db_connect(request.app.state.cfg)
    try:
        yield conn
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e.args[0]) if e.args else "Not found")
    except m.ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        conn.close()


# ---------------------------
# Models
# ---------------------------


class AccountCreateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    type: str = Field("cash", description="cash|card|bank|crypto|investment")
    currency: str = Field("RUB", description="RUB|USD|EUR|BTC|ETH")
    balance: float = Field(0, ge=0)
    icon: str = Field("💳", max_length=10)
    color: str = Field("#3b82f6", pattern=COLOR_PATTERN)


class AccountUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    type: Optional[str] = None
    currency: Optional[str] = None
    icon: Optional[str] = Field(None, max_length=10)
    color: Optional[str] = Field(None, pattern=COLOR_PATTERN)
    is_active: Optional[bool] = None


class CategoryCreateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    type: str = Field(..., description="income|expense")
    icon: str = Field("📋", max_length=10)
    color: str = Field("#6b7280", pattern=COLOR_PATTERN)


class CategoryUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    type: Optional[str] = None
    icon: Optional[str] = Field(None, max_length=10)
    color: Optional[str] = Field(None, pattern=COLOR_PATTERN)
    is_active: Optional[bool] = None


class TransactionCreateIn(BaseModel):
    account_id: int = Field(..., gt=0)
    category_id: int = Field(..., gt=0)
    amount: float = Field(..., gt=0)
    type: str = Field(..., description="income|expense")
    description: Optional[str] = Field(None, max_length=500)
    date: Optional[str] = Field(None, description="ISO datetime, defaults to now")


class TransactionUpdateIn(BaseModel):
    account_id: Optional[int] = Field(None, gt=0)
    category_id: Optional[int] = Field(None, gt=0)
    amount: Optional[float] = Field(None, gt=0)
    type: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)
    date: Optional[str] = None


def _changes(body: BaseModel) -> Dict[str, Any]:
    return body.model_dump(exclude_unset=True)


# ---------------------------
# API: Accounts
# ---------------------------


@router.get("/accounts")
def list_accounts(
    request: Request,
    is_active: Optional[bool] = Query(None),
    type: Optional[str] = Query(None),
    currency: Optional[str] = Query(None),
    u=Depends(_current_user),
):
    with _conn(request) as conn:
        rows = m.list_accounts(conn, int(u["id"]), is_active=is_active, account_type=type, currency=currency)
        return {"items": [m.account_to_dict(r) for r in rows]}


@router.post("/accounts", status_code=201)
def create_account(body: AccountCreateIn, request: Request, u=Depends(_current_user)):
    with _conn(request) as conn:
        row = m.create_account(conn, int(u["id"]), body.model_dump())
        return {"item": m.account_to_dict(row)}


@router.get("/accounts/summary")
def accounts_summary(request: Request, u=Depends(_current_user)):
    with _conn(request) as conn:
        return m.accounts_summary(conn, int(u["id"]))


@router.get("/accounts/{account_id}")
def get_account(request: Request, account_id: int = Path(..., gt=0), u=Depends(_current_user)):
    with _conn(request) as conn:
        return {"item": m.account_to_dict(m.get_account(conn, int(u["id"]), account_id))}


@router.put("/accounts/{account_id}")
def update_account(
    body: AccountUpdateIn,
    request: Request,
    account_id: int = Path(..., gt=0),
    u=Depends(_current_user),
):
    with _conn(request) as conn:
        row = m.update_account(conn, int(u["id"]), account_id, _changes(body))
        return {"item": m.account_to_dict(row)}


@router.delete("/accounts/{account_id}")
def delete_account(request: Request, account_id: int = Path(..., gt=0), u=Depends(_current_user)):
    with _conn(request) as conn:
        m.delete_account(conn, int(u["id"]), account_id)
    return {"ok": True}


# ---------------------------
# API: Categories
# ---------------------------


@router.get("/categories")
def list_categories(
    request: Request,
    type: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None),
    include_default: bool = Query(True),
    u=Depends(_current_user),
):
    with _conn(request) as conn:
        rows = m.list_categories(
            conn,
            int(u["id"]),
            category_type=type,
            is_active=is_active,
            include_default=include_default,
        )
        return {"items": [m.category_to_dict(r) for r in rows]}


@router.get("/categories/by-type/{category_type}")
def categories_by_type(request: Request, category_type: str, u=Depends(_current_user)):
    if category_type not in m.TRANSACTION_TYPES:
        raise HTTPException(status_code=400, detail='Type must be either "income" or "expense"')
    with _conn(request) as conn:
        rows = m.list_categories(conn, int(u["id"]), category_type=category_type, is_active=True)
        return {"items": [m.category_to_dict(r) for r in rows]}


@router.post("/categories", status_code=201)
def create_category(body: CategoryCreateIn, request: Request, u=Depends(_current_user)):
    with _conn(request) as conn:
        row = m.create_category(conn, int(u["id"]), body.model_dump())
        return {"item": m.category_to_dict(row)}


@router.get("/categories/{category_id}")
def get_category(request: Request, category_id: int = Path(..., gt=0), u=Depends(_current_user)):
    with _conn(request) as conn:
        return {"item": m.category_to_dict(m.get_accessible_category(conn, int(u["id"]), category_id))}


@router.put("/categories/{category_id}")
def update_category(
    body: CategoryUpdateIn,
    request: Request,
    category_id: int = Path(..., gt=0),
    u=Depends(_current_user),
):
    with _conn(request) as conn:
        row = m.update_category(conn, int(u["id"]), category_id, _changes(body))
        return {"item": m.category_to_dict(row)}


@router.delete("/categories/{category_id}")
def delete_category(request: Request, category_id: int = Path(..., gt=0), u=Depends(_current_user)):
    with _conn(request) as conn:
        m.delete_category(conn, int(u["id"]), category_id)
    return {"ok": True}


@dev_router.post("/categories/seed-defaults")
def seed_defaults(request: Request):
    with _conn(request) as conn:
        added = m.seed_default_categories(conn)
        total = conn.execute("SELECT COUNT(*) FROM categories WHERE is_default=1;").fetchone()[0]
    return {"ok": True, "added": added, "count": int(total)}


# ---------------------------
# API: Transactions
# ---------------------------


@router.get("/transactions")
def list_transactions(
    request: Request,
    account_id: Optional[int] = Query(None, gt=0),
    category_id: Optional[int] = Query(None, gt=0),
    type: Optional[str] = Query(None),
    date_from: Optional[str] = Query(None),
    date_to: Optional[str] = Query(None),
    min_amount: Optional[float] = Query(None, ge=0),
    max_amount: Optional[float] = Query(None, ge=0),
    search: Optional[str] = Query(None, max_length=100),
    u=Depends(_current_user),
):
    with _conn(request) as conn:
        rows = m.list_transactions(
            conn,
            int(u["id"]),
            account_id=account_id,
            category_id=category_id,
            tx_type=type,
            date_from=date_from,
            date_to=date_to,
            min_amount=min_amount,
            max_amount=max_amount,
            search=search,
        )
        return {"items": [m.transaction_to_dict(r) for r in rows]}


@router.post("/transactions", status_code=201)
def create_transaction(body: TransactionCreateIn, request: Request, u=Depends(_current_user)):
    with _conn(request) as conn:
        row = m.create_transaction(conn, int(u["id"]), body.model_dump())
        return {"item": m.transaction_to_dict(row)}


@router.get("/transactions/{transaction_id}")
def get_transaction(request: Request, transaction_id: int = Path(..., gt=0), u=Depends(_current_user)):
    with _conn(request) as conn:
        return {"item": m.transaction_to_dict(m.get_transaction(conn, int(u["id"]), transaction_id))}


@router.put("/transactions/{transaction_id}")
def update_transaction(
    body: TransactionUpdateIn,
    request: Request,
    transaction_id: int = Path(..., gt=0),
    u=Depends(_current_user),
):
    with _conn(request) as conn:
        row = m.update_transaction(conn, int(u["id"]), transaction_id, _changes(body))
        return {"item": m.transaction_to_dict(row)}


@router.delete("/transactions/{transaction_id}")
def delete_transaction(request: Request, transaction_id: int = Path(..., gt=0), u=Depends(_current_user)):
    with _conn(request) as conn:
        m.delete_transaction(conn, int(u["id"]), transaction_id)
    return {"ok": True}
