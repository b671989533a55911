# =============================================================================
# Copyright (c) 2026 5echo.io
# Project: netkeeper
# Purpose: Single administrator account and session guard for the API.
# Path: /netkeeper/auth.py
# Created: 2026-10-19
# Last modified: 2026-10-19
# =============================================================================

import functools
import hmac

from flask import jsonify, session
from werkzeug.security import check_password_hash, generate_password_hash

from netkeeper.models import ValidationError

ACCOUNT_KEY = "adminAccount"
DEFAULT_USERNAME = "admin"
DEFAULT_PASSWORD = "admin"
MIN_PASSWORD_LEN = 4


def ensure_account(store) -> dict:
    """Return the stored account, creating the default admin/admin on first use."""
    acct = store.get_setting(ACCOUNT_KEY)
    if not acct or not acct.get("username") or not acct.get("passwordHash"):
        acct = {
            "username": DEFAULT_USERNAME,
            "passwordHash": generate_password_hash(DEFAULT_PASSWORD),
        }
        store.set_setting(ACCOUNT_KEY, acct)
    return acct


def verify_login(store, username: str, password: str) -> bool:
    acct = ensure_account(store)
    user_ok = hmac.compare_digest(str(username or ""), str(acct["username"]))
    pass_ok = check_password_hash(acct["passwordHash"], str(password or ""))
    return user_ok and pass_ok


def update_account(store, username: str, password: str, confirm: str) -> dict:
    """Change the admin credentials. Username defaults to ``admin``."""
    password = password or ""
    if password != (confirm or ""):
        raise ValidationError("Passwords do not match.")
    if len(password) < MIN_PASSWORD_LEN:
        raise ValidationError(f"Password too short (min {MIN_PASSWORD_LEN} chars).")
    acct = {
        "username": (username or "").strip() or DEFAULT_USERNAME,
        "passwordHash": generate_password_hash(password),
    }
    store.set_setting(ACCOUNT_KEY, acct)
    return {"username": acct["username"]}


def login_required(view):
    @functools.wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get("user"):
            return jsonify({"ok": False, "message": "Authentication required"}), 401
        return view(*args, **kwargs)
    return wrapped
