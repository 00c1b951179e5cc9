"""CRUD helpers."""
from .user import get_by_email as get_user_by_email
from .user import get_or_create_by_email as get_or_create_user_by_email
from .user import normalize_email

__all__ = [
    "get_user_by_email",
    "get_or_create_user_by_email",
    "normalize_email",
]
