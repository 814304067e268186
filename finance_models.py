"""finance_models.py

Data layer and business rules for accounts, categories and transactions.

Design:
- one SQLite file, one connection per request (see db_connect)
- accounts keep a running balance; every transaction write adjusts it in the
  same DB transaction (+amount for income, -amount for expense)
- categories are either the user's own or shared defaults (user_id NULL)
- no transaction write may leave an account balance below zero (an expense
  may not exceed the balance, a removed income must still be covered)
- a transaction's category must have the same type as the transaction
- accounts/categories referenced by transactions cannot be deleted

Errors: KeyError (not found or not owned), ConflictError (uniqueness / still
referenced), ValueError (business rule). Routes map them to HTTP codes.
"""

from __future__ import annotations

import datetime as dt
import re
import sqlite3
from typing import Any, Dict, List, Optional, Sequence, Tuple


ACCOUNT_TYPES: Tuple[str, ...] = ("cash", "card", "bank", "crypto", "investment")
CURRENCIES: Tuple[str, ...] = ("RUB", "USD", "EUR", "BTC", "ETH")
TRANSACTION_TYPES: Tuple[str, ...] = ("income", "expense")

COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")

# balances are REAL; compared and stored rounded to this many digits
BALANCE_PRECISION = 8

DEFAULT_CATEGORIES: Tuple[Tuple[str, str, str, str], ...] = (
    # name, type, icon, color
    ("Зарплата", "income", "💼", "#16a34a"),
    ("Подработка", "income", "🛠", "#22c55e"),
    ("Подарки", "income", "🎁", "#84cc16"),
    ("Продукты", "expense", "🛒", "#ef4444"),
    ("Кафе и рестораны", "expense", "🍽", "#f97316"),
    ("Транспорт", "expense", "🚌", "#3b82f6"),
    ("Жильё", "expense", "🏠", "#8b5cf6"),
    ("Здоровье", "expense", "💊", "#ec4899"),
    ("Развлечения", "expense", "🎬", "#eab308"),
    ("Другое", "expense", "📋", "#6b7280"),
)


class ConflictError(Exception):
    pass


def db_connect(cfg: Any) -> sqlite3.Connection:
    conn = sqlite3.connect(str(cfg.DB_PATH), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def init_finance_db(conn: sqlite3.Connection) -> None:
    """Creates finance tables if missing and seeds default categories."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            balance REAL NOT NULL DEFAULT 0,
            currency TEXT NOT NULL DEFAULT 'RUB',
            type TEXT NOT NULL DEFAULT 'cash',
            icon TEXT NOT NULL DEFAULT '💳',
            color TEXT NOT NULL DEFAULT '#3b82f6',
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_accounts_user
            ON accounts(user_id, is_active);

        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NULL,
            name TEXT NOT NULL,
            type TEXT NOT NULL,
            icon TEXT NOT NULL DEFAULT '📋',
            color TEXT NOT NULL DEFAULT '#6b7280',
            is_default INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_categories_user
            ON categories(user_id, type);

        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            account_id INTEGER NOT NULL,
            category_id INTEGER NOT NULL,
            amount REAL NOT NULL,
            type TEXT NOT NULL,
            description TEXT NULL,
            date TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (account_id) REFERENCES accounts(id),
            FOREIGN KEY (category_id) REFERENCES categories(id)
        );

        CREATE INDEX IF NOT EXISTS idx_transactions_user_date
            ON transactions(user_id, date);
        CREATE INDEX IF NOT EXISTS idx_transactions_account
            ON transactions(account_id);
        CREATE INDEX IF NOT EXISTS idx_transactions_category
            ON transactions(category_id);
        """
    )
    seed_default_categories(conn)
    conn.commit()


def seed_default_categories(conn: sqlite3.Connection) -> int:
    """Inserts missing default categories. Returns how many were added."""
    now = iso_now()
    added = 0
    for name, ctype, icon, color in DEFAULT_CATEGORIES:
        exists = _fetchone(
            conn,
            "SELECT id FROM categories WHERE user_id IS NULL AND is_default=1 AND name=? AND type=?;",
            (name, ctype),
        )
        if exists:
            continue
        conn.execute(
            """
            INSERT INTO categories (user_id, name, type, icon, color, is_default, is_active, created_at, updated_at)
            VALUES (NULL, ?, ?, ?, ?, 1, 1, ?, ?);
            """,
            (name, ctype, icon, color, now, now),
        )
        added += 1
    conn.commit()
    return added


def _fetchone(conn: sqlite3.Connection, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
    cur = conn.execute(sql, tuple(params))
    return cur.fetchone()


def _fetchall(conn: sqlite3.Connection, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
    cur = conn.execute(sql, tuple(params))
    return cur.fetchall()


def _normalize_choice(value: str, allowed: Tuple[str, ...], label: str) -> str:
    v = (value or "").strip()
    if label == "currency":
        v = v.upper()
    else:
        v = v.lower()
    if v not in allowed:
        raise ValueError(f"Invalid {label}: {value}")
    return v


def _normalize_name(name: str) -> str:
    n = " ".join((name or "").split())
    if not n:
        raise ValueError("name is required")
    return n


def _bool_row(row: sqlite3.Row, *keys: str) -> Dict[str, Any]:
    d = dict(row)
    for k in keys:
        if k in d and d[k] is not None:
            d[k] = bool(d[k])
    return d


def account_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    d = _bool_row(row, "is_active")
    d["balance"] = round(float(d["balance"]), BALANCE_PRECISION)
    return d


def category_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return _bool_row(row, "is_default", "is_active")


def balance_delta(tx_type: str, amount: float) -> float:
    return float(amount) if tx_type == "income" else -float(amount)


# ---------------------------
# Users
# ---------------------------


def get_user_by_telegram_id(conn: sqlite3.Connection, telegram_id: int) -> Optional[sqlite3.Row]:
    return _fetchone(conn, "SELECT * FROM users WHERE telegram_id=?;", (int(telegram_id),))


def get_user(conn: sqlite3.Connection, user_id: int) -> sqlite3.Row:
    row = _fetchone(conn, "SELECT * FROM users WHERE id=?;", (int(user_id),))
    if not row:
        raise KeyError("User not found")
    return row


def create_user(conn: sqlite3.Connection, profile: Dict[str, Any]) -> sqlite3.Row:
    now = iso_now()
    cur = conn.execute(
        """
        INSERT INTO users (telegram_id, username, first_name, last_name, language_code, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?);
        """,
        (
            int(profile["telegram_id"]),
            profile.get("username"),
            profile.get("first_name"),
            profile.get("last_name"),
            profile.get("language_code"),
            now,
            now,
        ),
    )
    conn.commit()
    return get_user(conn, int(cur.lastrowid))


def get_or_create_user(conn: sqlite3.Connection, profile: Dict[str, Any]) -> Tuple[sqlite3.Row, bool]:
    existing = get_user_by_telegram_id(conn, int(profile["telegram_id"]))
    if existing:
        return existing, False
    try:
        return create_user(conn, profile), True
    except sqlite3.IntegrityError:
        # concurrent first login of the same telegram user
        row = get_user_by_telegram_id(conn, int(profile["telegram_id"]))
        if not row:
            raise
        return row, False


def get_total_balance(conn: sqlite3.Connection, user_id: int) -> float:
    row = _fetchone(
        conn,
        "SELECT COALESCE(SUM(balance), 0) AS total FROM accounts WHERE user_id=? AND is_active=1;",
        (int(user_id),),
    )
    return float(row["total"] or 0) if row else 0.0


# ---------------------------
# Accounts
# ---------------------------


def get_account(conn: sqlite3.Connection, user_id: int, account_id: int) -> sqlite3.Row:
    row = _fetchone(conn, "SELECT * FROM accounts WHERE id=? AND user_id=?;", (int(account_id), int(user_id)))
    if not row:
        raise KeyError("Account not found or does not belong to user")
    return row


def list_accounts(
    conn: sqlite3.Connection,
    user_id: int,
    *,
    is_active: Optional[bool] = None,
    account_type: Optional[str] = None,
    currency: Optional[str] = None,
) -> List[sqlite3.Row]:
    where = ["user_id=?"]
    params: List[Any] = [int(user_id)]
    if is_active is not None:
        where.append("is_active=?")
        params.append(1 if is_active else 0)
    if account_type:
        where.append("type=?")
        params.append(_normalize_choice(account_type, ACCOUNT_TYPES, "account type"))
    if currency:
        where.append("currency=?")
        params.append(_normalize_choice(currency, CURRENCIES, "currency"))
    return _fetchall(
        conn,
        f"SELECT * FROM accounts WHERE {' AND '.join(where)} ORDER BY created_at DESC, id DESC;",
        params,
    )


def _ensure_account_name_free(
    conn: sqlite3.Connection, user_id: int, name: str, exclude_id: Optional[int] = None
) -> None:
    sql = "SELECT id FROM accounts WHERE user_id=? AND name=? AND is_active=1"
    params: List[Any] = [int(user_id), name]
    if exclude_id is not None:
        sql += " AND id<>?"
        params.append(int(exclude_id))
    if _fetchone(conn, sql + ";", params):
        raise ConflictError("Account with this name already exists")


def create_account(conn: sqlite3.Connection, user_id: int, data: Dict[str, Any]) -> sqlite3.Row:
    name = _normalize_name(data.get("name", ""))
    account_type = _normalize_choice(data.get("type") or "cash", ACCOUNT_TYPES, "account type")
    currency = _normalize_choice(data.get("currency") or "RUB", CURRENCIES, "currency")
    balance = float(data.get("balance") or 0)
    if balance < 0:
        raise ValueError("Balance cannot be negative")
    color = data.get("color") or "#3b82f6"
    if not COLOR_RE.match(color):
        raise ValueError("Invalid color format")
    _ensure_account_name_free(conn, user_id, name)

    now = iso_now()
    cur = conn.execute(
        """
        INSERT INTO accounts (user_id, name, balance, currency, type, icon, color, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?);
        """,
        (int(user_id), name, balance, currency, account_type, data.get("icon") or "💳", color, now, now),
    )
    conn.commit()
    return get_account(conn, user_id, int(cur.lastrowid))


def update_account(conn: sqlite3.Connection, user_id: int, account_id: int, data: Dict[str, Any]) -> sqlite3.Row:
    existing = get_account(conn, user_id, account_id)
    # balance changes only through transactions
    changes = {k: v for k, v in data.items() if k != "balance" and v is not None}
    if not changes:
        raise ValueError("No update data provided")

    if "name" in changes:
        changes["name"] = _normalize_name(changes["name"])
        if changes["name"] != existing["name"]:
            _ensure_account_name_free(conn, user_id, changes["name"], exclude_id=account_id)
    if "type" in changes:
        changes["type"] = _normalize_choice(changes["type"], ACCOUNT_TYPES, "account type")
    if "currency" in changes:
        changes["currency"] = _normalize_choice(changes["currency"], CURRENCIES, "currency")
    if "color" in changes and not COLOR_RE.match(changes["color"]):
        raise ValueError("Invalid color format")
    if "is_active" in changes:
        changes["is_active"] = 1 if changes["is_active"] else 0

    allowed = ("name", "type", "currency", "icon", "color", "is_active")
    cols = [k for k in allowed if k in changes]
    if not cols:
        raise ValueError("No update data provided")
    sets = ", ".join(f"{c}=?" for c in cols)
    params = [changes[c] for c in cols] + [iso_now(), int(account_id), int(user_id)]
    conn.execute(f"UPDATE accounts SET {sets}, updated_at=? WHERE id=? AND user_id=?;", params)
    conn.commit()
    return get_account(conn, user_id, account_id)


def delete_account(conn: sqlite3.Connection, user_id: int, account_id: int) -> None:
    get_account(conn, user_id, account_id)
    used = _fetchone(conn, "SELECT COUNT(*) AS n FROM transactions WHERE account_id=?;", (int(account_id),))
    if used and int(used["n"]) > 0:
        raise ConflictError("Account has transactions and cannot be deleted")
    conn.execute("DELETE FROM accounts WHERE id=? AND user_id=?;", (int(account_id), int(user_id)))
    conn.commit()


def accounts_summary(conn: sqlite3.Connection, user_id: int) -> Dict[str, Any]:
    rows = list_accounts(conn, user_id, is_active=True)
    totals: Dict[str, float] = {}
    for r in rows:
        totals[r["currency"]] = round(totals.get(r["currency"], 0.0) + float(r["balance"]), 8)
    return {
        "accounts": [account_to_dict(r) for r in rows],
        "totals": totals,
        "count": len(rows),
    }


# ---------------------------
# Categories
# ---------------------------


def get_accessible_category(conn: sqlite3.Connection, user_id: int, category_id: int) -> sqlite3.Row:
    row = _fetchone(
        conn,
        "SELECT * FROM categories WHERE id=? AND (user_id=? OR is_default=1);",
        (int(category_id), int(user_id)),
    )
    if not row:
        raise KeyError("Category not found or not accessible")
    return row


def get_own_category(conn: sqlite3.Connection, user_id: int, category_id: int) -> sqlite3.Row:
    row = _fetchone(
        conn,
        "SELECT * FROM categories WHERE id=? AND user_id=? AND is_default=0;",
        (int(category_id), int(user_id)),
    )
    if not row:
        raise KeyError("Category not found, does not belong to user, or is a default category")
    return row


def list_categories(
    conn: sqlite3.Connection,
    user_id: int,
    *,
    category_type: Optional[str] = None,
    is_active: Optional[bool] = None,
    include_default: bool = True,
) -> List[sqlite3.Row]:
    if include_default:
        where = ["(user_id=? OR is_default=1)"]
    else:
        where = ["user_id=?"]
    params: List[Any] = [int(user_id)]
    if category_type:
        where.append("type=?")
        params.append(_normalize_choice(category_type, TRANSACTION_TYPES, "type"))
    if is_active is not None:
        where.append("is_active=?")
        params.append(1 if is_active else 0)
    # own categories first
    return _fetchall(
        conn,
        f"SELECT * FROM categories WHERE {' AND '.join(where)} ORDER BY is_default ASC, name ASC, id ASC;",
        params,
    )


def _ensure_category_name_free(
    conn: sqlite3.Connection, user_id: int, name: str, ctype: str, exclude_id: Optional[int] = None
) -> None:
    sql = "SELECT id FROM categories WHERE name=? AND type=? AND is_active=1 AND (user_id=? OR is_default=1)"
    params: List[Any] = [name, ctype, int(user_id)]
    if exclude_id is not None:
        sql += " AND id<>?"
        params.append(int(exclude_id))
    if _fetchone(conn, sql + ";", params):
        raise ConflictError("Category with this name and type already exists")


def create_category(conn: sqlite3.Connection, user_id: int, data: Dict[str, Any]) -> sqlite3.Row:
    name = _normalize_name(data.get("name", ""))
    ctype = _normalize_choice(data.get("type", ""), TRANSACTION_TYPES, "type")
    color = data.get("color") or "#6b7280"
    if not COLOR_RE.match(color):
        raise ValueError("Invalid color format")
    _ensure_category_name_free(conn, user_id, name, ctype)

    now = iso_now()
    cur = conn.execute(
        """
        INSERT INTO categories (user_id, name, type, icon, color, is_default, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, 0, 1, ?, ?);
        """,
        (int(user_id), name, ctype, data.get("icon") or "📋", color, now, now),
    )
    conn.commit()
    return get_own_category(conn, user_id, int(cur.lastrowid))


def update_category(conn: sqlite3.Connection, user_id: int, category_id: int, data: Dict[str, Any]) -> sqlite3.Row:
    existing = get_own_category(conn, user_id, category_id)
    changes = {k: v for k, v in data.items() if v is not None}
    if not changes:
        raise ValueError("No update data provided")

    if "name" in changes:
        changes["name"] = _normalize_name(changes["name"])
    if "type" in changes:
        changes["type"] = _normalize_choice(changes["type"], TRANSACTION_TYPES, "type")
        if changes["type"] != existing["type"]:
            used = _fetchone(
                conn, "SELECT COUNT(*) AS n FROM transactions WHERE category_id=?;", (int(category_id),)
            )
            if used and int(used["n"]) > 0:
                raise ConflictError("Category type cannot change while transactions use it")
    if "color" in changes and not COLOR_RE.match(changes["color"]):
        raise ValueError("Invalid color format")
    if "is_active" in changes:
        changes["is_active"] = 1 if changes["is_active"] else 0

    new_name = changes.get("name", existing["name"])
    new_type = changes.get("type", existing["type"])
    if new_name != existing["name"] or new_type != existing["type"]:
        _ensure_category_name_free(conn, user_id, new_name, new_type, exclude_id=category_id)

    allowed = ("name", "type", "icon", "color", "is_active")
    cols = [k for k in allowed if k in changes]
    if not cols:
        raise ValueError("No update data provided")
    sets = ", ".join(f"{c}=?" for c in cols)
    params = [changes[c] for c in cols] + [iso_now(), int(category_id), int(user_id)]
    conn.execute(f"UPDATE categories SET {sets}, updated_at=? WHERE id=? AND user_id=?;", params)
    conn.commit()
    return get_own_category(conn, user_id, category_id)


def delete_category(conn: sqlite3.Connection, user_id: int, category_id: int) -> None:
    get_own_category(conn, user_id, category_id)
    used = _fetchone(conn, "SELECT COUNT(*) AS n FROM transactions WHERE category_id=?;", (int(category_id),))
    if used and int(used["n"]) > 0:
        raise ConflictError("Category has transactions and cannot be deleted")
    conn.execute("DELETE FROM categories WHERE id=? AND user_id=?;", (int(category_id), int(user_id)))
    conn.commit()


# ---------------------------
# Transactions
# ---------------------------

_TX_SELECT = """
    SELECT
        t.*,
        a.name AS account_name, a.type AS account_type, a.currency AS account_currency,
        a.icon AS account_icon, a.color AS account_color,
        c.name AS category_name, c.type AS category_type,
        c.icon AS category_icon, c.color AS category_color
    FROM transactions t
    JOIN accounts a ON a.id = t.account_id
    JOIN categories c ON c.id = t.category_id
"""


def transaction_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    out = {
        k: d[k]
        for k in (
            "id", "user_id", "account_id", "category_id", "amount", "type",
            "description", "date", "created_at", "updated_at",
        )
    }
    out["amount"] = float(out["amount"])
    out["account"] = {
        "id": d["account_id"],
        "name": d["account_name"],
        "type": d["account_type"],
        "currency": d["account_currency"],
        "icon": d["account_icon"],
        "color": d["account_color"],
    }
    out["category"] = {
        "id": d["category_id"],
        "name": d["category_name"],
        "type": d["category_type"],
        "icon": d["category_icon"],
        "color": d["category_color"],
    }
    return out


def get_transaction(conn: sqlite3.Connection, user_id: int, transaction_id: int) -> sqlite3.Row:
    row = _fetchone(conn, _TX_SELECT + " WHERE t.id=? AND t.user_id=?;", (int(transaction_id), int(user_id)))
    if not row:
        raise KeyError("Transaction not found or does not belong to user")
    return row


def list_transactions(
    conn: sqlite3.Connection,
    user_id: int,
    *,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    tx_type: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    min_amount: Optional[float] = None,
    max_amount: Optional[float] = None,
    search: Optional[str] = None,
) -> List[sqlite3.Row]:
    where = ["t.user_id=?"]
    params: List[Any] = [int(user_id)]
    if account_id is not None:
        where.append("t.account_id=?")
        params.append(int(account_id))
    if category_id is not None:
        where.append("t.category_id=?")
        params.append(int(category_id))
    if tx_type:
        where.append("t.type=?")
        params.append(_normalize_choice(tx_type, TRANSACTION_TYPES, "type"))
    if date_from:
        where.append("t.date>=?")
        params.append(normalize_tx_date(date_from))
    if date_to:
        where.append("t.date<=?")
        params.append(normalize_tx_date(date_to))
    if min_amount is not None:
        where.append("t.amount>=?")
        params.append(float(min_amount))
    if max_amount is not None:
        where.append("t.amount<=?")
        params.append(float(max_amount))
    if search:
        where.append("LOWER(COALESCE(t.description, '')) LIKE ?")
        params.append(f"%{search.strip().lower()}%")
    return _fetchall(
        conn,
        _TX_SELECT + f" WHERE {' AND '.join(where)} ORDER BY t.date DESC, t.created_at DESC, t.id DESC;",
        params,
    )


def normalize_tx_date(value: Optional[str]) -> str:
    if not value:
        return iso_now()
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(s)
    except ValueError as e:
        raise ValueError(f"Invalid date: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc).replace(microsecond=0).isoformat()


def _usable_account(conn: sqlite3.Connection, user_id: int, account_id: int) -> sqlite3.Row:
    account = get_account(conn, user_id, account_id)
    if not int(account["is_active"]):
        raise ValueError("Cannot create transaction for inactive account")
    return account


def _usable_category(conn: sqlite3.Connection, user_id: int, category_id: int, tx_type: str) -> sqlite3.Row:
    category = get_accessible_category(conn, user_id, category_id)
    if not int(category["is_active"]):
        raise ValueError("Cannot use inactive category")
    if category["type"] != tx_type:
        raise ValueError(
            f"Category type ({category['type']}) does not match transaction type ({tx_type})"
        )
    return category


def _ensure_covered(balance: float, delta: float) -> None:
    if round(float(balance) + float(delta), BALANCE_PRECISION) < 0:
        raise ValueError("Insufficient balance")


def _apply_balance(conn: sqlite3.Connection, account_id: int, delta: float, now: str) -> None:
    conn.execute(
        "UPDATE accounts SET balance=ROUND(balance+?, ?), updated_at=? WHERE id=?;",
        (float(delta), BALANCE_PRECISION, now, int(account_id)),
    )


def create_transaction(conn: sqlite3.Connection, user_id: int, data: Dict[str, Any]) -> sqlite3.Row:
    tx_type = _normalize_choice(data.get("type", ""), TRANSACTION_TYPES, "type")
    amount = float(data.get("amount") or 0)
    if amount <= 0:
        raise ValueError("Amount must be positive")

    account = _usable_account(conn, user_id, int(data["account_id"]))
    _ensure_covered(account["balance"], balance_delta(tx_type, amount))
    _usable_category(conn, user_id, int(data["category_id"]), tx_type)

    now = iso_now()
    with conn:
        cur = conn.execute(
            """
            INSERT INTO transactions (user_id, account_id, category_id, amount, type, description, date, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                int(user_id),
                int(account["id"]),
                int(data["category_id"]),
                amount,
                tx_type,
                data.get("description"),
                normalize_tx_date(data.get("date")),
                now,
                now,
            ),
        )
        _apply_balance(conn, int(account["id"]), balance_delta(tx_type, amount), now)
    return get_transaction(conn, user_id, int(cur.lastrowid))


def update_transaction(
    conn: sqlite3.Connection, user_id: int, transaction_id: int, data: Dict[str, Any]
) -> sqlite3.Row:
    existing = get_transaction(conn, user_id, transaction_id)
    changes = {k: v for k, v in data.items() if v is not None}
    if not changes:
        raise ValueError("No update data provided")

    new_type = _normalize_choice(changes.get("type", existing["type"]), TRANSACTION_TYPES, "type")
    new_amount = float(changes.get("amount", existing["amount"]))
    if new_amount <= 0:
        raise ValueError("Amount must be positive")
    new_account_id = int(changes.get("account_id", existing["account_id"]))
    new_category_id = int(changes.get("category_id", existing["category_id"]))

    if "account_id" in changes:
        _usable_account(conn, user_id, new_account_id)
    if "category_id" in changes or "type" in changes:
        _usable_category(conn, user_id, new_category_id, new_type)

    old_delta = balance_delta(existing["type"], float(existing["amount"]))
    new_delta = balance_delta(new_type, new_amount)

    # neither the old nor the new account may end up below zero
    source = get_account(conn, user_id, int(existing["account_id"]))
    if new_account_id == int(source["id"]):
        _ensure_covered(source["balance"], new_delta - old_delta)
    else:
        _ensure_covered(source["balance"], -old_delta)
        _ensure_covered(get_account(conn, user_id, new_account_id)["balance"], new_delta)

    now = iso_now()
    with conn:
        _apply_balance(conn, int(existing["account_id"]), -old_delta, now)
        _apply_balance(conn, new_account_id, new_delta, now)
        conn.execute(
            """
            UPDATE transactions
            SET account_id=?, category_id=?, amount=?, type=?, description=?, date=?, updated_at=?
            WHERE id=? AND user_id=?;
            """,
            (
                new_account_id,
                new_category_id,
                new_amount,
                new_type,
                changes.get("description", existing["description"]),
                normalize_tx_date(changes["date"]) if "date" in changes else existing["date"],
                now,
                int(transaction_id),
                int(user_id),
            ),
        )
    return get_transaction(conn, user_id, transaction_id)


def delete_transaction(conn: sqlite3.Connection, user_id: int, transaction_id: int) -> None:
    existing = get_transaction(conn, user_id, transaction_id)
    revert = -balance_delta(existing["type"], float(existing["amount"]))
    account = get_account(conn, user_id, int(existing["account_id"]))
    _ensure_covered(account["balance"], revert)
    now = iso_now()
    with conn:
        _apply_balance(conn, int(existing["account_id"]), revert, now)
        conn.execute("DELETE FROM transactions WHERE id=? AND user_id=?;", (int(transaction_id), int(user_id)))
