"""Buyer CRUD. Callers own the transaction: these helpers flush, never commit."""
from sqlmodel import Session, select

from storefront.models import User, utc_now


def normalize_email(email: str) -> str:
    return email.strip().lower()


def get_by_email(*, session: Session, email: str) -> User | None:
    statement = select(User).where(User.email == normalize_email(email))
    return session.exec(statement).first()


def get_or_create_by_email(*, session: Session, email: str, name: str | None = None) -> User:
    """Return the buyer for ``email``, creating it inside the caller's transaction."""
    user = get_by_email(session=session, email=email)
    if user:
        if name and not user.name:
            user.name = name
            user.updated_at = utc_now()
            session.add(user)
        return user
    user = User(email=normalize_email(email), name=name)
    session.add(user)
    session.flush()
    return user
