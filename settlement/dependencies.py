# settlement/dependencies.py

import logging
from typing import Iterator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from jose import JWTError, jwt
from fastapi import Request
from settlement.core.config import settings
from settlement.core.errors import Forbidden
from settlement.crud import user as crud_user
from settlement.db.session import SessionLocal
from settlement.models.user import User

logger = logging.getLogger(__name__)

# --- Auth schemes ---
bearer_scheme = HTTPBearer(auto_error=True)

# --- DB session ---
def get_db_session_instance() -> Session:
    return SessionLocal()

def get_db() -> Iterator[Session]:
    """
    Main FastAPI dependency for a DB session.
    A generator, so it works with `Depends`.
    """
    db = get_db_session_instance()
    try:
        yield db
    finally:
        db.close()

# --- Authentication and authorization ---

def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> User:
    """
    REQUIRED dependency.
    Verifies the identity provider's token and returns the local user,
    creating it on first sight. Invalid or missing token - 401.
    """
    logger.debug("Dependency 'get_current_user' starting...")

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    token = credentials.credentials

    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        external_id: str = payload.get("sub")
        email: str = payload.get("email")
        if external_id is None or not email:
            logger.warning("Token payload is missing 'sub' or 'email'.")
            raise credentials_exception

    except JWTError as e:
        logger.warning(f"JWT Error during token decoding: {e}")
        raise credentials_exception

    user = crud_user.upsert_user(db, external_id=str(external_id), email=email)
    request.state.user = user
    logger.info(f"Successfully authenticated user ID: {user.id} (subject: {external_id})")
    return user


def get_admin_user(current_user: User = Depends(get_current_user)) -> User:
    """
    Guards admin endpoints: the user's email must be listed in ADMIN_EMAILS.
    """
    if current_user.email.lower() not in settings.ADMIN_EMAILS:
        logger.warning(f"Permission denied for user {current_user.id} ({current_user.email}).")
        raise Forbidden("You do not have permission to access this resource.", code="ADMIN_ONLY")

    logger.info(f"Admin access GRANTED for user {current_user.id}.")
    return current_user
