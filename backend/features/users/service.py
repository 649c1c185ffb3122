"""
User account service.
- signup(store, name, email, password)
- login(store, email, password)
- create_or_get(store, name, email, password)
- user_status(user)
"""

from typing import Any, Dict, Optional, Tuple
import logging

import bcrypt

from backend.core.config import settings
from backend.core.errors import AuthenticationError, ConflictError, ValidationError
from backend.features.entitlements.service import can_perform_metered_action, remaining_actions
from backend.models.user import User

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6
BCRYPT_ROUNDS = 10


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its stored hash."""
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        # Malformed stored hash
        return False


def _validate_credentials(name: Optional[str], email: Optional[str], password: Optional[str]) -> None:
    if not name or not name.strip() or not email or not email.strip() or not password:
        raise ValidationError("Name, email, and password are required")
    if "@" not in email:
        raise ValidationError("A valid email address is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")


def signup(store, name: str, email: str, password: str) -> User:
    """Create a new free-trial account.

    Raises:
        ValidationError: missing fields or short password
        ConflictError: email already registered
    """
    _validate_credentials(name, email, password)
    if store.get_user_by_email(email):
        raise ConflictError("User with this email already exists", operation="create_user")

    user = store.create_user(
        name=name,
        email=email,
        password_hash=hash_password(password),
        queries_limit=settings.FREE_TRIAL_QUERY_LIMIT,
    )
    logger.info("User signed up", extra={"user_id": user.user_id})
    return user


def create_or_get(store, name: str, email: str, password: str) -> Tuple[User, bool]:
    """Return (user, created). An existing account is returned as is."""
    _validate_credentials(name, email, password)
    existing = store.get_user_by_email(email)
    if existing:
        return existing, False
    return signup(store, name, email, password), True


def login(store, email: str, password: str) -> User:
    if not email or not password:
        raise ValidationError("Email and password are required")

    found = store.get_credentials(email)
    if found is None or not verify_password(password, found[1]):
        logger.warning("Login failed", extra={"email_domain": email.rsplit("@", 1)[-1]})
        raise AuthenticationError("Invalid email or password")
    return found[0]


def user_status(user: User) -> Dict[str, Any]:
    """Public view of a user with computed entitlement fields."""
    data = user.model_dump(mode="json")
    data["remaining_queries"] = remaining_actions(user)
    data["can_query"] = can_perform_metered_action(user)
    return data
