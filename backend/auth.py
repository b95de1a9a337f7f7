from datetime import datetime, timezone
from functools import wraps
from typing import Dict, Optional

import bcrypt
import jwt
from bson import ObjectId
from bson.errors import InvalidId
from flask import current_app, g, request

from .database import get_db
from .errors import Forbidden, InternalError, Unauthenticated

ALGORITHM = "HS256"
ALLOWED_USER_ROLES = {"user", "admin"}
ALLOWED_USER_STATUSES = {"Active", "Inactive"}
ALLOWED_GENDERS = {"male", "female", "other"}

PROFILE_FIELDS = ("name", "image", "profession", "gender", "address", "phone", "bio")
ADMIN_USER_FIELDS = PROFILE_FIELDS + ("email", "role", "status", "isEmailVerified")
MUTABLE_USER_FIELDS = {
    "user": PROFILE_FIELDS,
    "admin": ADMIN_USER_FIELDS,
}


def hash_password(password: str) -> bytes:
    rounds = int(current_app.config.get("BCRYPT_ROUNDS", 12))
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))


def verify_password(password: str, stored_hash) -> bool:
    if not stored_hash:
        return False
    if isinstance(stored_hash, str):
        stored_hash = stored_hash.encode("utf-8")
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash)
    except ValueError:
        return False


def issue_token(user_id) -> str:
    issued_at = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": issued_at,
        "exp": issued_at + current_app.config["JWT_ACCESS_TOKEN_EXPIRES"],
    }
    return jwt.encode(payload, current_app.config["JWT_SECRET_KEY"], algorithm=ALGORITHM)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def authenticate(raw_token: Optional[str]) -> Dict:
    """Resolve a bearer token to the stored identity, credential excluded.

    Raises ``Unauthenticated`` with one of the reasons ``missing``,
    ``invalid``, ``expired``, ``malformed`` or ``unknown_subject``. Failures
    that are not token errors surface as ``InternalError``.
    """
    if not raw_token:
        raise Unauthenticated("missing")

    try:
        claims = jwt.decode(
            raw_token,
            current_app.config["JWT_SECRET_KEY"],
            algorithms=[ALGORITHM],
            options={"require": ["exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("expired")
    except jwt.InvalidTokenError:
        raise Unauthenticated("invalid")
    except Exception as exc:
        current_app.logger.error("Authentication error: %s", exc)
        raise InternalError("Authentication error.") from exc

    subject = claims.get("sub")
    if not subject:
        raise Unauthenticated("malformed")
    try:
        user_id = ObjectId(str(subject))
    except (InvalidId, TypeError):
        raise Unauthenticated("malformed")

    user = get_db().users.find_one({"_id": user_id}, {"password": 0})
    if not user:
        raise Unauthenticated("unknown_subject")

    g.current_user = user
    return user


def current_identity() -> Optional[Dict]:
    return g.get("current_user")


def require_role(identity: Optional[Dict], role: str) -> None:
    if not identity:
        raise Unauthenticated("required")
    if identity.get("role") != role:
        raise Forbidden("Admin access required." if role == "admin" else None)


def require_verified(identity: Optional[Dict]) -> None:
    if not identity:
        raise Unauthenticated("required")
    if not identity.get("isEmailVerified"):
        raise Forbidden("Email verification required.")


def _authenticate_request() -> Dict:
    return authenticate(extract_bearer_token(request.headers.get("Authorization")))


def login_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        _authenticate_request()
        return view(*args, **kwargs)

    return wrapper


def admin_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        require_role(_authenticate_request(), "admin")
        return view(*args, **kwargs)

    return wrapper


def verified_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        require_verified(_authenticate_request())
        return view(*args, **kwargs)

    return wrapper


def optional_identity(view):
    # Guest checkout: a missing header is fine, a bad token is not.
    @wraps(view)
    def wrapper(*args, **kwargs):
        if request.headers.get("Authorization"):
            _authenticate_request()
        return view(*args, **kwargs)

    return wrapper


def filter_mutable_fields(payload: Optional[Dict], role: str) -> Dict:
    allowed = MUTABLE_USER_FIELDS.get(role, ())
    if not isinstance(payload, dict):
        return {}
    return {
        key: value
        for key, value in payload.items()
        if key in allowed and value is not None
    }
