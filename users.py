# Meterline User Provisioning
# Signup writes three rows in one transaction: the user, its billing account
# and its user_property. Every other module can then assume all three exist.
#
# Password hashing is the auth layer's job; this module stores what it is given.

import logging
import re
import secrets
from typing import Optional

from db import get_coordinator
from errors import Conflict, NotFound
from instances import InstanceState, wall_clock

log = logging.getLogger("meterline")

_USERNAME_RE = re.compile(r"^[a-zA-Z0-9._-]{3,32}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Columns safe to hand back to callers
PUBLIC_FIELDS = ("id", "username", "email", "eakey", "created_at")


def generate_eakey():
    """Secondary access credential, gated behind API-key activation."""
    return f"ea_{secrets.token_hex(16)}"


def _public(user):
    return {k: user[k] for k in PUBLIC_FIELDS}


def create_user(username: str, email: str, password_hash: str,
                passkey: Optional[str] = None, coordinator=None, clock=None) -> dict:
    """Register a user and provision its billing account and properties.

    Raises:
        ValueError: malformed username, email or empty password hash.
        Conflict: username or email already taken.
    """
    if not _USERNAME_RE.match(username or ""):
        raise ValueError(f"Invalid username: {username!r}")
    email = (email or "").strip().lower()
    if not _EMAIL_RE.match(email):
        raise ValueError(f"Invalid email: {email!r}")
    if not password_hash:
        raise ValueError("password_hash is required")

    db = coordinator or get_coordinator()
    now = (clock or wall_clock)()
    user = {
        "username": username,
        "email": email,
        "password_hash": password_hash,
        "passkey": passkey,
        "eakey": generate_eakey(),
        "created_at": now,
    }

    with db.transaction() as tx:
        taken = tx.fetchone(
            "SELECT username, email FROM users WHERE username = ? OR email = ?",
            (username, email),
        )
        if taken:
            field = "username" if taken["username"] == username else "email"
            raise Conflict(f"{field} already registered", {field: user[field]})

        user["id"] = tx.insert("users", user)
        tx.insert("billing", {
            "user_id": user["id"],
            "amount_in_wallet": 0.0,
            "amount_spent": 0.0,
            "total_amount_spent": 0.0,
            "average_hourly_consumption": 0.0,
        })
        tx.insert("user_property", {
            "user_id": user["id"],
            "instance_status": InstanceState.INACTIVE.value,
            "instance_usage": 0.0,
            "api_key_active": False,
        })

    log.info("USER %d registered username=%s", user["id"], username)
    return _public(user)


def get_user(user_id: int, coordinator=None) -> dict:
    db = coordinator or get_coordinator()
    with db.read() as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if row is None:
        raise NotFound(f"User {user_id} not found", {"user_id": user_id})
    return _public(dict(row))


def get_user_property(user_id: int, coordinator=None) -> dict:
    db = coordinator or get_coordinator()
    with db.read() as conn:
        row = conn.execute(
            "SELECT * FROM user_property WHERE user_id = ?", (user_id,)
        ).fetchone()
    if row is None:
        raise NotFound(f"No properties for user {user_id}", {"user_id": user_id})
    prop = dict(row)
    prop["api_key_active"] = bool(prop["api_key_active"])
    return prop
