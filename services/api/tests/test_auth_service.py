from datetime import timedelta

import pytest
from sqlalchemy import func, select

from ecp_api.errors import (
    BadRequestError,
    ConflictError,
    InternalError,
    NotFoundError,
    TooManyRequestsError,
    UnauthorizedError,
)
from ecp_api.models.session import UserSession
from ecp_api.models.user import User
from ecp_api.services.auth import AuthPolicy, AuthService, Identity
from ecp_api.services.local_auth import verify_password
from ecp_api.services.storage import LocalFileStorage, UploadedFile
from ecp_api.utils.clock import as_utc

from conftest import STRONG_PASSWORD, TEST_HASH_ITERATIONS


def _count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


# ---- 身份解析 ----


def test_identity_classifies_identifier_by_at_sign():
    assert Identity.from_fields(identifier="a@x.com") == Identity(email="a@x.com")
    assert Identity.from_fields(identifier="bob") == Identity(username="bob")
    assert Identity.from_fields(email=" a@x.com ") == Identity(email="a@x.com")


def test_identity_requires_exactly_one_field():
    with pytest.raises(BadRequestError):
        Identity.from_fields()
    with pytest.raises(BadRequestError):
        Identity.from_fields(email="a@x.com", username="bob")


# ---- 注册 ----


def test_register_creates_unverified_user_and_sends_otp(auth_service: AuthService, notifier, clock):
    result = auth_service.register(name="Alice", email="A@X.com", password=STRONG_PASSWORD, username="alice")

    assert result.is_existing is False
    user = result.user
    assert user.email == "a@x.com"
    assert user.is_verified is False
    assert user.roles == ["USER"]
    assert verify_password(STRONG_PASSWORD, user.password_hash)
    assert len(user.verification_code) == 6
    assert as_utc(user.verification_code_expire_at) == clock() + timedelta(minutes=10)
    assert [mail.code for mail in notifier.otp_emails] == [user.verification_code]


def test_register_conflicts_with_verified_email_without_mutation(auth_service, make_verified_user, db_session):
    user = make_verified_user(email="a@x.com")
    original_hash = user.password_hash

    with pytest.raises(ConflictError, match="Account already exists with this email"):
        auth_service.register(name="Mallory", email="a@x.com", password="Bb2@bbbb")

    db_session.refresh(user)
    assert user.name == "Alice"
    assert user.password_hash == original_hash
    assert _count(db_session, User) == 1


def test_register_resumes_unverified_row_in_place(auth_service: AuthService, notifier, db_session):
    first = auth_service.register(name="Alice", email="a@x.com", password=STRONG_PASSWORD)
    first_id = first.user.id
    first_code = notifier.otp_emails[-1].code

    second = auth_service.register(name="Alice Again", email="a@x.com", password="Bb2@bbbb")

    assert second.is_existing is True
    assert second.user.id == first_id
    assert second.user.name == "Alice Again"
    assert len(notifier.otp_emails) == 2
    assert _count(db_session, User) == 1
    # 新验证码覆盖旧验证码（极小概率相同，不做断言）。
    assert second.user.verification_code == notifier.otp_emails[-1].code
    assert first_code


def test_register_username_taken_by_verified_user(auth_service, make_verified_user):
    make_verified_user(email="a@x.com", username="alice")

    with pytest.raises(ConflictError, match="Username already taken by a verified user"):
        auth_service.register(name="Other", email="b@x.com", password=STRONG_PASSWORD, username="alice")


def test_register_unverified_username_collision_is_allowed(auth_service: AuthService, db_session):
    auth_service.register(name="A", email="a@x.com", password=STRONG_PASSWORD, username="dup")
    auth_service.register(name="B", email="b@x.com", password=STRONG_PASSWORD, username="dup")

    assert _count(db_session, User) == 2


def test_register_with_profile_picture_replaces_previous(auth_service: AuthService, storage):
    image = UploadedFile("me.png", "image/png", b"png-bytes")
    first = auth_service.register(name="A", email="a@x.com", password=STRONG_PASSWORD, profile_image=image)
    first_url = first.user.profile_picture
    assert first_url in storage.files

    second = auth_service.register(name="A", email="a@x.com", password=STRONG_PASSWORD, profile_image=image)

    assert first_url in storage.deleted
    assert second.user.profile_picture != first_url
    assert second.user.profile_picture in storage.files


def test_resume_without_picture_deletes_previous_file(auth_service: AuthService, storage):
    image = UploadedFile("me.png", "image/png", b"png-bytes")
    first = auth_service.register(name="A", email="a@x.com", password=STRONG_PASSWORD, profile_image=image)
    first_url = first.user.profile_picture

    second = auth_service.register(name="A", email="a@x.com", password=STRONG_PASSWORD)

    assert second.user.profile_picture is None
    assert first_url in storage.deleted
    assert first_url not in storage.files


def test_register_oversized_picture_keeps_account_without_picture(
    users, sessions, token_issuer, notifier, clock, tmp_path
):
    service = AuthService(
        users=users,
        sessions=sessions,
        tokens=token_issuer,
        notifier=notifier,
        storage=LocalFileStorage(str(tmp_path), "/uploads", max_bytes=1024),
        policy=AuthPolicy(password_hash_iterations=TEST_HASH_ITERATIONS),
        clock=clock,
    )

    result = service.register(
        name="A",
        email="a@x.com",
        password=STRONG_PASSWORD,
        profile_image=UploadedFile("me.png", "image/png", b"x" * 1025),
    )

    assert result.user.profile_picture is None
    assert len(notifier.otp_emails) == 1
    assert not (tmp_path / "profile-pictures").exists()


def test_register_swallows_upload_failure(auth_service: AuthService, storage, notifier):
    storage.fail_upload = True
    result = auth_service.register(
        name="A",
        email="a@x.com",
        password=STRONG_PASSWORD,
        profile_image=UploadedFile("me.png", "image/png", b"png"),
    )

    assert result.user.profile_picture is None
    assert len(notifier.otp_emails) == 1


# ---- 验证 ----


def test_verify_success_creates_session(auth_service: AuthService, notifier, token_issuer, db_session):
    auth_service.register(name="A", email="a@x.com", password=STRONG_PASSWORD)
    code = notifier.otp_emails[-1].code

    result = auth_service.verify(Identity(email="a@x.com"), code, "10.0.0.1", "pytest")

    assert result.user.is_verified is True
    assert result.user.verification_code is None
    assert token_issuer.validate_access_token(result.access_token)["id"] == str(result.user.id)
    session = db_session.execute(select(UserSession)).scalar_one()
    assert session.token == result.refresh_token.token
    assert session.ip_address == "10.0.0.1"
    assert session.user_agent == "pytest"


def test_verify_by_unverified_username(auth_service: AuthService, notifier):
    auth_service.register(name="A", email="a@x.com", password=STRONG_PASSWORD, username="alice")
    result = auth_service.verify(Identity(username="alice"), notifier.otp_emails[-1].code)
    assert result.user.is_verified is True


def test_verify_failures(auth_service: AuthService, notifier, clock, make_verified_user):
    with pytest.raises(NotFoundError):
        auth_service.verify(Identity(email="nobody@x.com"), "123456")

    make_verified_user(email="done@x.com")
    with pytest.raises(BadRequestError, match="User Already Verified"):
        auth_service.verify(Identity(email="done@x.com"), "123456")

    auth_service.register(name="B", email="b@x.com", password=STRONG_PASSWORD)
    code = notifier.otp_emails[-1].code
    wrong = "000000" if code != "000000" else "111111"
    with pytest.raises(BadRequestError, match="Invalid Verification Code"):
        auth_service.verify(Identity(email="b@x.com"), wrong)

    clock.advance(minutes=11)
    with pytest.raises(BadRequestError, match="Verification Code Expired"):
        auth_service.verify(Identity(email="b@x.com"), code)


def test_verify_session_write_failure_is_internal_error(auth_service: AuthService, notifier, monkeypatch):
    auth_service.register(name="A", email="a@x.com", password=STRONG_PASSWORD)
    monkeypatch.setattr(auth_service.sessions, "create", lambda **kwargs: None)

    with pytest.raises(InternalError, match="Failed to create session"):
        auth_service.verify(Identity(email="a@x.com"), notifier.otp_emails[-1].code)


# ---- 登录与锁定 ----


def test_login_with_email_username_and_identifier(auth_service: AuthService, make_verified_user, db_session):
    make_verified_user(email="a@x.com", username="alice")

    for identity in (Identity(email="a@x.com"), Identity(username="alice"), Identity.from_fields(identifier="alice")):
        result = auth_service.login(identity, STRONG_PASSWORD)
        assert result.refresh_token is not None

    assert _count(db_session, UserSession) == 4  # 验证时一个会话 + 三次登录


def test_login_unknown_and_unverified(auth_service: AuthService):
    with pytest.raises(NotFoundError):
        auth_service.login(Identity(email="nobody@x.com"), STRONG_PASSWORD)

    auth_service.register(name="A", email="a@x.com", password=STRONG_PASSWORD)
    with pytest.raises(BadRequestError, match="User Not Verified"):
        auth_service.login(Identity(email="a@x.com"), STRONG_PASSWORD)


def test_lockout_after_three_failures_blocks_correct_password(auth_service, make_verified_user, clock, users):
    user = make_verified_user(email="a@x.com")
    identity = Identity(email="a@x.com")

    for _ in range(2):
        with pytest.raises(UnauthorizedError, match="Invalid Credentials"):
            auth_service.login(identity, "Wrong1!pw")
    with pytest.raises(TooManyRequestsError) as locked:
        auth_service.login(identity, "Wrong1!pw")

    retry_at = as_utc(users.find_by_id(user.id).retry_timestamp)
    assert retry_at == clock() + timedelta(minutes=15)
    assert locked.value.details["retry_at"] == retry_at.isoformat()

    # 锁定窗口内正确口令同样被拒绝，计数保持触发锁定时的值。
    clock.advance(minutes=14)
    with pytest.raises(TooManyRequestsError):
        auth_service.login(identity, STRONG_PASSWORD)
    assert users.find_by_id(user.id).incorrect_attempt == 3

    clock.advance(minutes=2)
    result = auth_service.login(identity, STRONG_PASSWORD)
    assert result.user.incorrect_attempt == 0
    assert result.user.retry_timestamp is None


def test_failure_after_lock_expiry_relocks_immediately(auth_service, make_verified_user, clock):
    make_verified_user(email="a@x.com")
    identity = Identity(email="a@x.com")
    for _ in range(2):
        with pytest.raises(UnauthorizedError):
            auth_service.login(identity, "Wrong1!pw")
    with pytest.raises(TooManyRequestsError):
        auth_service.login(identity, "Wrong1!pw")

    clock.advance(minutes=16)
    with pytest.raises(TooManyRequestsError):
        auth_service.login(identity, "Wrong1!pw")


# ---- 找回密码 ----


def test_forgot_password_unknown_username_sends_nothing(auth_service: AuthService, notifier):
    with pytest.raises(NotFoundError, match="User not found"):
        auth_service.forgot_password(Identity(username="bob"))
    assert notifier.reset_emails == []


def test_forgot_password_requires_verified_user(auth_service: AuthService, notifier):
    auth_service.register(name="A", email="a@x.com", password=STRONG_PASSWORD)
    with pytest.raises(NotFoundError, match="User not Verified"):
        auth_service.forgot_password(Identity(email="a@x.com"))
    assert notifier.reset_emails == []


def test_forgot_password_stores_code_hash_and_sends_link(auth_service, make_verified_user, notifier, users, clock):
    user = make_verified_user(email="a@x.com")

    data = auth_service.forgot_password(Identity(email="a@x.com"))

    assert data == {"message": "Reset instructions sent to email"}
    stored = users.find_by_id(user.id)
    mail = notifier.reset_emails[-1]
    assert mail.code == stored.verification_code
    assert mail.reset_link == f"https://shop.example.com/reset/{stored.verification_hash}"
    assert as_utc(stored.verification_code_expire_at) == clock() + timedelta(minutes=15)


def test_verify_otp_success_and_expiry(auth_service, make_verified_user, notifier, clock, db_session):
    make_verified_user(email="a@x.com")
    sessions_before = _count(db_session, UserSession)
    auth_service.forgot_password(Identity(email="a@x.com"))
    code = notifier.reset_emails[-1].code

    assert auth_service.verify_otp(Identity(email="a@x.com"), code) == {"verified": True}
    assert _count(db_session, UserSession) == sessions_before

    clock.advance(minutes=16)
    with pytest.raises(BadRequestError, match="Verification Code Expired"):
        auth_service.verify_otp(Identity(email="a@x.com"), code)


def test_verify_otp_lock_resets_counter_and_resends_code(auth_service, make_verified_user, notifier, users, clock):
    user = make_verified_user(email="a@x.com")
    auth_service.forgot_password(Identity(email="a@x.com"))
    code = notifier.reset_emails[-1].code
    wrong = "000000" if code != "000000" else "111111"
    otp_sent_before = len(notifier.otp_emails)

    for _ in range(3):
        with pytest.raises(BadRequestError, match="Invalid Verification Code"):
            auth_service.verify_otp(Identity(email="a@x.com"), wrong)

    stored = users.find_by_id(user.id)
    assert stored.incorrect_attempt == 0
    assert as_utc(stored.retry_timestamp) == clock() + timedelta(minutes=15)
    assert len(notifier.otp_emails) == otp_sent_before + 1
    assert notifier.otp_emails[-1].code == code

    with pytest.raises(TooManyRequestsError):
        auth_service.verify_otp(Identity(email="a@x.com"), code)


def test_reset_password_by_hash_skips_code_check(auth_service, make_verified_user, users):
    user = make_verified_user(email="a@x.com")
    auth_service.forgot_password(Identity(email="a@x.com"))
    reset_hash = users.find_by_id(user.id).verification_hash

    auth_service.reset_password(reset_hash, None, None, "Newpass1!")

    stored = users.find_by_id(user.id)
    assert verify_password("Newpass1!", stored.password_hash)
    assert stored.verification_code is None
    assert stored.verification_hash is None
    assert stored.incorrect_attempt == 0
    with pytest.raises(NotFoundError, match="Invalid reset request"):
        auth_service.reset_password(reset_hash, None, None, "Another1!")


def test_reset_password_by_code_and_undefined_hash(auth_service, make_verified_user, notifier, users, db_session):
    user = make_verified_user(email="a@x.com", username="alice")
    sessions_before = _count(db_session, UserSession)
    auth_service.forgot_password(Identity(username="alice"))
    code = notifier.reset_emails[-1].code
    wrong = "000000" if code != "000000" else "111111"

    with pytest.raises(BadRequestError, match="Invalid Verification Code"):
        auth_service.reset_password("undefined", Identity(username="alice"), wrong, "Newpass1!")
    auth_service.reset_password("undefined", Identity(username="alice"), code, "Newpass1!")

    assert verify_password("Newpass1!", users.find_by_id(user.id).password_hash)
    # 重置密码不吊销已有会话。
    assert _count(db_session, UserSession) == sessions_before


def test_reset_password_identity_path_errors(auth_service: AuthService):
    with pytest.raises(BadRequestError):
        auth_service.reset_password(None, None, "123456", "Newpass1!")
    with pytest.raises(NotFoundError, match="User not found"):
        auth_service.reset_password(None, Identity(email="nobody@x.com"), "123456", "Newpass1!")


# ---- 第三方登录、刷新与登出 ----


def test_handle_oauth_login_skips_verification_checks(auth_service: AuthService, users, db_session):
    user = users.create(email="oauth@x.com", name="O", password_hash="x", is_verified=False)

    result = auth_service.handle_oauth_login(user, "1.2.3.4", "browser")

    assert result.refresh_token is not None
    assert _count(db_session, UserSession) == 1


def test_refresh_returns_new_access_token_only(auth_service, make_verified_user, token_issuer):
    make_verified_user(email="a@x.com")
    login = auth_service.login(Identity(email="a@x.com"), STRONG_PASSWORD)

    refreshed = auth_service.refresh_token(login.refresh_token.token)

    assert refreshed.refresh_token is None
    assert refreshed.user.email == "a@x.com"
    assert token_issuer.validate_access_token(refreshed.access_token) is not None


def test_refresh_unknown_and_expired_session(auth_service, make_verified_user, clock, sessions):
    with pytest.raises(UnauthorizedError, match="Invalid Session"):
        auth_service.refresh_token("unknown-token")
    with pytest.raises(UnauthorizedError, match="Invalid Session"):
        auth_service.refresh_token(None)

    make_verified_user(email="a@x.com")
    login = auth_service.login(Identity(email="a@x.com"), STRONG_PASSWORD)
    clock.advance(days=31 * 10)

    with pytest.raises(UnauthorizedError, match="Refresh token expired"):
        auth_service.refresh_token(login.refresh_token.token)
    assert sessions.find_by_token(login.refresh_token.token) is None


def test_logout_is_idempotent(auth_service, make_verified_user, sessions):
    make_verified_user(email="a@x.com")
    login = auth_service.login(Identity(email="a@x.com"), STRONG_PASSWORD)

    assert auth_service.logout(login.refresh_token.token) is True
    assert auth_service.logout(login.refresh_token.token) is True
    assert auth_service.logout(None) is True
    assert sessions.find_by_token(login.refresh_token.token) is None
