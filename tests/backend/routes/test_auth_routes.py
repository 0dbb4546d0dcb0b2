import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import ValidationError

from backend.auth import jwt_handler
from backend.auth.dependencies import get_current_user
from backend.models.profile import Profile
from backend.routes.auth_routes import (
    ChangePasswordRequest,
    CredentialsRequest,
    SignupRequest,
    change_password,
    login,
    signup,
)
from backend.routes.profile_routes import (
    CreateProfileRequest,
    UpdateProfileRequest,
    create_profile,
    get_profile,
    update_profile,
)


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme='Bearer', credentials=token)


def test_signup_request_normalizes_email_and_checks_password() -> None:
    assert SignupRequest(email=' Therapist@Example.COM ', password='long-enough').email == 'therapist@example.com'

    with pytest.raises(ValidationError):
        SignupRequest(email='therapist@example.com', password='short')
    with pytest.raises(ValidationError):
        SignupRequest(email='not-an-email', password='long-enough')


def test_signup_then_login_returns_tokens_for_the_user(db) -> None:
    signup_token = signup(SignupRequest(email='new@example.com', password='s3cret-pass'), db=db)
    login_token = login(CredentialsRequest(email='new@example.com', password='s3cret-pass'), db=db)

    assert jwt_handler.decode_access_token(signup_token.access_token)['sub'] == 'new@example.com'
    user = get_current_user(credentials=_bearer(login_token.access_token), db=db)
    assert user.email == 'new@example.com'


def test_duplicate_signup_is_a_conflict(db) -> None:
    signup(SignupRequest(email='new@example.com', password='s3cret-pass'), db=db)

    with pytest.raises(HTTPException) as exception_info:
        signup(SignupRequest(email='NEW@example.com', password='s3cret-pass'), db=db)

    assert exception_info.value.status_code == 409


def test_login_with_wrong_password_is_unauthorized(db) -> None:
    signup(SignupRequest(email='new@example.com', password='s3cret-pass'), db=db)

    with pytest.raises(HTTPException) as exception_info:
        login(CredentialsRequest(email='new@example.com', password='wrong-pass'), db=db)

    assert exception_info.value.status_code == 401
    assert exception_info.value.detail == 'Invalid email or password.'


def test_change_password_requires_current_password(db) -> None:
    signup(SignupRequest(email='new@example.com', password='s3cret-pass'), db=db)
    token = login(CredentialsRequest(email='new@example.com', password='s3cret-pass'), db=db).access_token
    user = get_current_user(credentials=_bearer(token), db=db)

    with pytest.raises(HTTPException) as exception_info:
        change_password(ChangePasswordRequest(current_password='nope', new_password='another-pass'), current_user=user, db=db)
    assert exception_info.value.status_code == 401

    change_password(ChangePasswordRequest(current_password='s3cret-pass', new_password='another-pass'), current_user=user, db=db)
    assert login(CredentialsRequest(email='new@example.com', password='another-pass'), db=db).access_token


@pytest.mark.parametrize(('credentials', 'detail'), [
    (None, 'Missing auth token'),
    (_bearer('   '), 'Missing auth token'),
    (_bearer('garbage'), 'Invalid token'),
])
def test_get_current_user_rejects_bad_credentials(db, credentials, detail: str) -> None:
    with pytest.raises(HTTPException) as exception_info:
        get_current_user(credentials=credentials, db=db)

    assert exception_info.value.status_code == 401
    assert exception_info.value.detail == detail


def test_token_for_deleted_user_is_rejected(db) -> None:
    token = jwt_handler.create_access_token(subject='ghost@example.com')

    with pytest.raises(HTTPException) as exception_info:
        get_current_user(credentials=_bearer(token), db=db)

    assert exception_info.value.detail == 'User not found'


def test_profile_lifecycle(db, user) -> None:
    assert get_profile(current_user=user, db=db) is None

    created = create_profile(CreateProfileRequest(full_name=' Dr. Ana ', session_price=180), current_user=user, db=db)
    assert created.full_name == 'Dr. Ana'

    with pytest.raises(HTTPException) as exception_info:
        create_profile(CreateProfileRequest(full_name='Again'), current_user=user, db=db)
    assert exception_info.value.status_code == 409

    updated = update_profile(UpdateProfileRequest(full_name='  ', crp_number='06/123456'), current_user=user, db=db)
    assert updated.full_name == 'Dr. Ana'
    assert updated.crp_number == '06/123456'
    assert db.query(Profile).count() == 1
