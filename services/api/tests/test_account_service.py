from uuid import uuid4

import pytest

from ecp_api.errors import BadRequestError, NotFoundError, UnauthorizedError
from ecp_api.services.auth import Identity
from ecp_api.services.local_auth import verify_password
from ecp_api.services.storage import UploadedFile
from ecp_api.services.users import AccountService

from conftest import STRONG_PASSWORD, TEST_HASH_ITERATIONS


@pytest.fixture
def account_service(users, sessions, storage) -> AccountService:
    return AccountService(
        users=users,
        sessions=sessions,
        storage=storage,
        password_hash_iterations=TEST_HASH_ITERATIONS,
    )


def test_get_profile(account_service: AccountService, make_verified_user):
    user = make_verified_user(email="a@x.com")
    assert account_service.get_profile(user.id).email == "a@x.com"
    with pytest.raises(NotFoundError):
        account_service.get_profile(uuid4())


def test_change_password_revokes_other_sessions(account_service, auth_service, make_verified_user, sessions, users):
    user = make_verified_user(email="a@x.com")
    current = auth_service.login(Identity(email="a@x.com"), STRONG_PASSWORD).refresh_token.token
    auth_service.login(Identity(email="a@x.com"), STRONG_PASSWORD)

    revoked = account_service.change_password(
        user.id,
        current_password=STRONG_PASSWORD,
        new_password="Newpass1!",
        confirm_password="Newpass1!",
        current_token=current,
    )

    assert revoked == 2
    assert [item.token for item in sessions.find_all_for_user(user.id)] == [current]
    assert verify_password("Newpass1!", users.find_by_id(user.id).password_hash)


def test_change_password_validation(account_service: AccountService, make_verified_user):
    user = make_verified_user(email="a@x.com")

    with pytest.raises(BadRequestError):
        account_service.change_password(
            user.id, current_password=STRONG_PASSWORD, new_password="Newpass1!", confirm_password="Other1!x"
        )
    with pytest.raises(UnauthorizedError, match="Current password is incorrect"):
        account_service.change_password(
            user.id, current_password="Wrong1!pw", new_password="Newpass1!", confirm_password="Newpass1!"
        )


def test_delete_account_removes_sessions_picture_and_user(account_service, auth_service, notifier, storage, users, sessions):
    result = auth_service.register(
        name="A",
        email="a@x.com",
        password=STRONG_PASSWORD,
        profile_image=UploadedFile("me.png", "image/png", b"png"),
    )
    picture = result.user.profile_picture
    user = auth_service.verify(Identity(email="a@x.com"), notifier.otp_emails[-1].code).user

    account_service.delete_account(user.id)

    assert users.find_by_id(user.id) is None
    assert sessions.find_all_for_user(user.id) == []
    assert picture in storage.deleted
