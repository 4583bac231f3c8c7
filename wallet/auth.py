import secrets
import string

from fastapi import Depends, HTTPException, Request, status
from werkzeug.security import check_password_hash, generate_password_hash

from .models import User

SESSION_USER_KEY = "user_id"

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def hash_password(raw_password: str) -> str:
    return generate_password_hash(raw_password)


def verify_password(password_hash: str, raw_password: str) -> bool:
    return check_password_hash(password_hash, raw_password)


def generate_referral_code(username: str) -> str:
    """First four characters of the username plus six random characters, upper-cased."""
    prefix = "".join(ch for ch in username if ch.isalnum())[:4].upper()
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))
    return f"{prefix}{suffix}"


def get_service(request: Request):
    return request.app.state.wallet_service


def login_session(request: Request, user: User) -> None:
    request.session.clear()
    request.session[SESSION_USER_KEY] = user.id


def logout_session(request: Request) -> None:
    request.session.clear()


def current_user(request: Request, service=Depends(get_service)) -> User:
    user_id = request.session.get(SESSION_USER_KEY)
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

    user = service.storage.get_user(int(user_id))
    if user is None:
        request.session.clear()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def require_admin(user: User = Depends(current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
