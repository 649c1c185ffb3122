"""
User account service tests.
"""
import pytest

from backend.core.errors import AuthenticationError, ConflictError, ValidationError
from backend.features.entitlements.service import UNLIMITED
from backend.features.users import service as user_service


def test_password_hashing_roundtrip():
    hashed = user_service.hash_password("hunter22")
    assert hashed != "hunter22"
    assert user_service.verify_password("hunter22", hashed) is True
    assert user_service.verify_password("wrong-one", hashed) is False


def test_verify_against_malformed_hash():
    assert user_service.verify_password("hunter22", "not-a-bcrypt-hash") is False


def test_signup_creates_free_trial(store):
    user = user_service.signup(store, "Alice", "Alice@Example.com", "secret1")
    assert user.email == "alice@example.com"
    assert user.subscription_status.value == "free_trial"
    assert user.queries_limit == 5


def test_signup_duplicate_email(store):
    user_service.signup(store, "Alice", "alice@example.com", "secret1")
    with pytest.raises(ConflictError):
        user_service.signup(store, "Alice Two", "ALICE@example.com", "secret2")


@pytest.mark.parametrize("name,email,password", [
    ("", "a@example.com", "secret1"),
    ("Alice", "", "secret1"),
    ("Alice", "a@example.com", ""),
    ("Alice", "not-an-email", "secret1"),
    ("Alice", "a@example.com", "short"),
])
def test_signup_validation(store, name, email, password):
    with pytest.raises(ValidationError):
        user_service.signup(store, name, email, password)


def test_login(store):
    created = user_service.signup(store, "Alice", "alice@example.com", "secret1")
    assert user_service.login(store, "ALICE@example.com", "secret1").user_id == created.user_id


@pytest.mark.parametrize("email,password", [
    ("alice@example.com", "wrong-pass"),
    ("nobody@example.com", "secret1"),
])
def test_login_rejects_bad_credentials(store, email, password):
    user_service.signup(store, "Alice", "alice@example.com", "secret1")
    with pytest.raises(AuthenticationError) as exc_info:
        user_service.login(store, email, password)
    assert exc_info.value.message == "Invalid email or password"


def test_create_or_get_is_idempotent(store):
    first, created = user_service.create_or_get(store, "Alice", "alice@example.com", "secret1")
    again, created_again = user_service.create_or_get(store, "Alice", "alice@example.com", "secret1")
    assert created is True
    assert created_again is False
    assert again.user_id == first.user_id


def test_status_view(make_user):
    trial = user_service.user_status(make_user(queries_used=2))
    assert trial["remaining_queries"] == 3
    assert trial["can_query"] is True
    assert trial["subscription_status"] == "free_trial"
    assert "password_hash" not in trial

    paid = user_service.user_status(make_user(
        email="bob@example.com",
        subscription_status="lifetime",
        subscription_plan="lifetime",
    ))
    assert paid["remaining_queries"] == UNLIMITED
