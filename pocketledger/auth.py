from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
import jwt
from fastapi import Header
from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from pocketledger.config import get_settings
from pocketledger.database import accounts, users
from pocketledger.errors import Conflict, NotFound, Unauthorized

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def create_token(user_id: int, email: str, token_type: str = ACCESS_TOKEN) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    if token_type == REFRESH_TOKEN:
        expires_at = now + timedelta(days=settings.refresh_token_ttl_days)
    else:
        expires_at = now + timedelta(minutes=settings.access_token_ttl_minutes)
    payload = {
        "sub": str(user_id),
        "email": email,
        "type": token_type,
        "iat": now,
        "exp": expires_at,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, expected_type: str = ACCESS_TOKEN) -> dict[str, Any]:
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise Unauthorized("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise Unauthorized("Invalid token") from exc
    if claims.get("type") != expected_type:
        raise Unauthorized("Invalid token")
    try:
        claims["sub"] = int(claims["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise Unauthorized("Invalid token") from exc
    return claims


def issue_tokens(user_id: int, email: str) -> dict[str, Any]:
    settings = get_settings()
    return {
        "access_token": create_token(user_id, email, ACCESS_TOKEN),
        "refresh_token": create_token(user_id, email, REFRESH_TOKEN),
        "token_type": "bearer",
        "expires_in": settings.access_token_ttl_minutes * 60,
    }


def get_current_user_id(authorization: str | None = Header(None)) -> int:
    """FastAPI dependency resolving the bearer token to a user id."""
    if not authorization:
        raise Unauthorized("No token provided")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("No token provided")
    claims = decode_token(token.strip(), ACCESS_TOKEN)
    return claims["sub"]


def serialize_user(row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "email": row["email"],
        "name": row["name"],
        "base_currency": row["base_currency"],
        "secondary_currencies": list(row["secondary_currencies"] or []),
        "created_at": row["created_at"],
    }


def enabled_currencies(row) -> set[str]:
    return {row["base_currency"], *(row["secondary_currencies"] or [])}


def load_user(conn: Connection, user_id: int):
    row = conn.execute(
        select(users).where(users.c.id == user_id, users.c.deleted_at.is_(None))
    ).mappings().first()
    if not row:
        raise NotFound("User not found.")
    return row


def register_user(
    conn: Connection,
    email: str,
    password: str,
    name: str,
    base_currency: str | None,
    secondary_currencies: list[str],
) -> dict[str, Any]:
    base = base_currency or get_settings().default_currency
    existing = conn.execute(select(users.c.id).where(users.c.email == email)).first()
    if existing:
        raise Conflict("User with this email already exists.")
    try:
        row = conn.execute(
            insert(users)
            .values(
                email=email,
                name=name,
                hashed_password=hash_password(password),
                base_currency=base,
                secondary_currencies=[code for code in secondary_currencies if code != base],
            )
            .returning(*users.c)
        ).mappings().first()
    except IntegrityError as exc:
        raise Conflict("User with this email already exists.") from exc
    user = serialize_user(row)
    return {"user": user, **issue_tokens(user["id"], user["email"])}


def authenticate(conn: Connection, email: str, password: str) -> dict[str, Any]:
    row = conn.execute(
        select(users).where(users.c.email == email.strip().lower(), users.c.deleted_at.is_(None))
    ).mappings().first()
    if not row or not verify_password(password, row["hashed_password"]):
        raise Unauthorized("Invalid email or password.")
    user = serialize_user(row)
    return {"user": user, **issue_tokens(user["id"], user["email"])}


def refresh_session(conn: Connection, refresh_token: str) -> dict[str, Any]:
    claims = decode_token(refresh_token, REFRESH_TOKEN)
    try:
        row = load_user(conn, claims["sub"])
    except NotFound as exc:
        raise Unauthorized("Invalid token") from exc
    return issue_tokens(row["id"], row["email"])


def update_settings(conn: Connection, user_id: int, changes: dict[str, Any]) -> dict[str, Any]:
    current = load_user(conn, user_id)
    values = {key: value for key, value in changes.items() if value is not None}
    base = values.get("base_currency", current["base_currency"])
    secondary = values.get("secondary_currencies", current["secondary_currencies"] or [])
    values["secondary_currencies"] = [code for code in secondary if code != base]
    in_use = conn.execute(
        select(accounts.c.currency)
        .where(accounts.c.user_id == user_id, accounts.c.deleted_at.is_(None))
        .distinct()
    ).scalars().all()
    dropped = sorted(set(in_use) - {base, *values["secondary_currencies"]})
    if dropped:
        raise Conflict(f"Currencies still used by accounts cannot be disabled: {', '.join(dropped)}.")
    row = conn.execute(
        update(users).where(users.c.id == user_id).values(**values).returning(*users.c)
    ).mappings().first()
    return serialize_user(row)
