"""telegram_auth.py

Telegram WebApp initData verification.

    secret_key      = HMAC_SHA256(key=b"WebAppData", msg=bot_token)
    data_check_str  = "\\n".join(sorted(f"{k}={v}" for every field except hash))
    hash            = HMAC_SHA256(key=secret_key, msg=data_check_str).hexdigest()

The module is pure: no config, no env, no DB. Callers pass the bot token and
the Mode explicitly. Adversarial input never raises, it returns Invalid.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import json
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError


SIGNATURE_KEY = "hash"
AUTH_DATE_KEY = "auth_date"
USER_KEY = "user"
WEBAPP_DATA_KEY = b"WebAppData"
MOCK_HASH = "mock_hash"
DEFAULT_MAX_AGE_SEC = 24 * 3600


class Mode(str, enum.Enum):
    PRODUCTION = "production"
    DEVELOPMENT = "development"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Mode":
        v = (value or "").strip().lower()
        if v in ("prod", "production"):
            return cls.PRODUCTION
        if v in ("dev", "development", "local", "test"):
            return cls.DEVELOPMENT
        raise ValueError(f"Unknown mode: {value!r}")


class InvalidReason(str, enum.Enum):
    MALFORMED_PAYLOAD = "MalformedPayload"
    MISSING_SIGNATURE = "MissingSignature"
    INVALID_SIGNATURE = "InvalidSignature"
    EXPIRED = "Expired"


class ParsedIdentity(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: StrictInt = Field(..., gt=0)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    username: Optional[str] = Field(None, max_length=100)
    language_code: Optional[str] = Field(None, max_length=10)
    is_premium: Optional[bool] = None
    allows_write_to_pm: Optional[bool] = None


@dataclass(frozen=True)
class Valid:
    fields: Dict[str, str]
    identity: Optional[ParsedIdentity] = None
    bypassed: bool = False

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Invalid:
    reason: InvalidReason
    detail: str = field(default="", compare=False)

    @property
    def ok(self) -> bool:
        return False


VerificationResult = Union[Valid, Invalid]


class _Malformed(Exception):
    pass


def _now_epoch() -> int:
    return int(time.time())


def _parse_pairs(payload: str) -> List[Tuple[str, str]]:
    if not payload or not payload.strip():
        raise _Malformed("empty payload")
    try:
        pairs = urllib.parse.parse_qsl(payload, keep_blank_values=True, strict_parsing=True)
    except (ValueError, UnicodeDecodeError) as e:
        raise _Malformed(str(e)) from e

    seen = set()
    for k, _v in pairs:
        if not k:
            raise _Malformed("empty key")
        if k in seen:
            raise _Malformed(f"duplicate key: {k}")
        seen.add(k)
    return pairs


def _parse_identity(raw: str) -> ParsedIdentity:
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise _Malformed("user is not valid JSON") from e
    if not isinstance(data, dict):
        raise _Malformed("user is not a JSON object")
    try:
        return ParsedIdentity.model_validate(data)
    except ValidationError as e:
        raise _Malformed("user does not describe a Telegram user") from e


def data_check_string(fields: Dict[str, str]) -> str:
    pairs = sorted((k, v) for k, v in fields.items() if k != SIGNATURE_KEY)
    return "\n".join(f"{k}={v}" for k, v in pairs)


def _secret_key(bot_token: str) -> bytes:
    return hmac.new(WEBAPP_DATA_KEY, bot_token.encode("utf-8"), hashlib.sha256).digest()


def sign_fields(fields: Dict[str, str], bot_token: str) -> str:
    """Signature Telegram would put into ``hash`` for these fields."""
    if not bot_token:
        raise ValueError("bot token is required to sign initData")
    msg = data_check_string(fields).encode("utf-8")
    return hmac.new(_secret_key(bot_token), msg, hashlib.sha256).hexdigest()


def verify(
    payload: str,
    secret: str,
    max_age: int = DEFAULT_MAX_AGE_SEC,
    *,
    mode: Mode = Mode.PRODUCTION,
    now: Optional[int] = None,
) -> VerificationResult:
    """
    Check that ``payload`` was issued by Telegram for the bot owning ``secret``
    and is not older than ``max_age`` seconds.

    A payload whose auth_date lies in the future is accepted.
    """
    if not secret:
        raise ValueError("bot token is required to verify initData")

    try:
        pairs = _parse_pairs(payload)
        fields = dict(pairs)
        identity = _parse_identity(fields[USER_KEY]) if USER_KEY in fields else None
    except _Malformed as e:
        return Invalid(InvalidReason.MALFORMED_PAYLOAD, str(e))

    received_hash = fields.pop(SIGNATURE_KEY, None)
    if not received_hash:
        return Invalid(InvalidReason.MISSING_SIGNATURE, "Missing hash parameter")

    if mode is Mode.DEVELOPMENT and received_hash == MOCK_HASH:
        return Valid(fields=fields, identity=identity, bypassed=True)

    expected_hash = sign_fields(fields, secret)
    if not hmac.compare_digest(expected_hash.encode("utf-8"), received_hash.encode("utf-8")):
        return Invalid(InvalidReason.INVALID_SIGNATURE, "Invalid hash signature")

    try:
        auth_date = int(fields.get(AUTH_DATE_KEY, ""))
    except ValueError:
        return Invalid(InvalidReason.MALFORMED_PAYLOAD, "auth_date is missing or not an integer")

    current = _now_epoch() if now is None else int(now)
    if current - auth_date > max_age:
        return Invalid(InvalidReason.EXPIRED, "initData is too old")

    return Valid(fields=fields, identity=identity)


def synthesize(
    identity: Union[ParsedIdentity, Dict[str, Any]],
    secret: str,
    *,
    mode: Mode,
    auth_date: Optional[int] = None,
    query_id: str = "mock_query_id",
) -> str:
    """Build a really signed initData for local tooling and tests."""
    if mode is not Mode.DEVELOPMENT:
        raise RuntimeError("Mock initData is not allowed in production")
    if not isinstance(identity, ParsedIdentity):
        identity = ParsedIdentity.model_validate(identity)

    user_json = json.dumps(
        identity.model_dump(exclude_none=True),
        separators=(",", ":"),
        ensure_ascii=False,
    )
    fields = {
        USER_KEY: user_json,
        AUTH_DATE_KEY: str(_now_epoch() if auth_date is None else int(auth_date)),
        "query_id": query_id,
    }
    fields[SIGNATURE_KEY] = sign_fields(fields, secret)
    return urllib.parse.urlencode(fields)


def format_user_for_db(identity: ParsedIdentity) -> Dict[str, Any]:
    return {
        "telegram_id": identity.id,
        "username": identity.username or None,
        "first_name": identity.first_name,
        "last_name": identity.last_name or None,
        "language_code": identity.language_code or "ru",
    }
