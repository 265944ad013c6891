# core/auth.py
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from firebase_admin import auth
from typing import Optional
import logging

from app.models.user_model import User
from app.core.documents import run_in_thread
from app.core.firebase import get_db

logger = logging.getLogger("mlfor")
bearer_scheme = HTTPBearer(auto_error=False)


def get_user_by_uid(uid: str) -> Optional[User]:
    doc = get_db().collection("users").document(uid).get()
    if not doc.exists:
        return None
    return User(**{**doc.to_dict(), "id": uid})


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> User:
    """
    Returns the currently authenticated user.
    Raises 401 if the Firebase ID token is missing or invalid, 403 if the account is disabled.
    """
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

    try:
        decoded = await run_in_thread(auth.verify_id_token, credentials.credentials)
    except Exception as e:
        logger.warning(f"Token verification failed: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication token")

    uid = decoded.get("uid")
    if not uid:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = await run_in_thread(get_user_by_uid, uid)
    if user is None:
        # Account exists in Firebase Auth but was never registered with the store
        logger.warning(f"No user record for uid {uid}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
