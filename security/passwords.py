"""bcrypt hashing plus the strength rules the storefront's signup form shows."""
import re
from typing import List, Tuple

import bcrypt
from flask import current_app

MAX_LENGTH = 128

RULES = (
    (re.compile(r"[A-Z]"), "Password must include at least 1 uppercase letter"),
    (re.compile(r"[a-z]"), "Password must include at least 1 lowercase letter"),
    (re.compile(r"\d"), "Password must include at least 1 number"),
    (re.compile(r"[^A-Za-z0-9]"), "Password must include at least 1 symbol"),
)


def validate_password(pw) -> Tuple[bool, List[str]]:
    if not isinstance(pw, str):
        return False, ["Password must be a string"]

    min_len = int(current_app.config.get("PASSWORD_MIN_LEN", 8))
    errors = []
    if len(pw) < min_len:
        errors.append(f"Password must be at least {min_len} characters")
    if len(pw) > MAX_LENGTH:
        errors.append(f"Password must be at most {MAX_LENGTH} characters")
    errors.extend(message for pattern, message in RULES if not pattern.search(pw))
    return not errors, errors


def hash_password(plain: str) -> str:
    if not isinstance(plain, str) or not plain:
        raise ValueError("Password must be a non-empty string")
    rounds = int(current_app.config.get("BCRYPT_ROUNDS", 12))
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, password_hash: str) -> bool:
    if not plain or not password_hash:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False
