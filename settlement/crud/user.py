# settlement/crud/user.py
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from settlement.models.user import User


def get_user_by_id(db: Session, user_id: int) -> User | None:
    """Gets a user by primary key."""
    return db.query(User).filter(User.id == user_id).first()

def get_user_by_external_id(db: Session, external_id: str) -> User | None:
    return db.query(User).filter(User.external_id == external_id).first()

def get_user_by_email(db: Session, email: str) -> User | None:
    return db.query(User).filter(User.email == email.strip().lower()).first()

def upsert_user(db: Session, external_id: str, email: str) -> User:
    """
    Returns the user for an identity-provider subject, creating it on first sight.
    Two first requests racing each other both end up with the same row.
    """
    user = get_user_by_external_id(db, external_id)
    if user:
        return user

    user = User(external_id=external_id, email=email.strip().lower())
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        user = get_user_by_external_id(db, external_id)
        if user is None:
            raise
        return user
    db.refresh(user)
    return user
