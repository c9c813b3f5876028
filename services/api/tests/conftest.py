from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import ecp_api.models  # noqa: F401
from ecp_api.core.security import TokenIssuer
from ecp_api.models.base import Base
from ecp_api.models.user import User
from ecp_api.repositories import SessionRepository, UserRepository
from ecp_api.services.auth import AuthPolicy, AuthService, Identity
from ecp_api.services.storage import StorageError, UploadedFile
from ecp_api.utils.clock import utc_now

TEST_ACCESS_SECRET = "unit-test-access-secret-0123456789abcdef"
TEST_REFRESH_SECRET = "unit-test-refresh-secret-0123456789abcdef"
TEST_HASH_ITERATIONS = 1000
STRONG_PASSWORD = "Aa1!aaaa"


class FakeClock:
    """可手动推进的时钟，起点为真实当前时间。"""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utc_now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@dataclass
class SentEmail:
    to_email: str
    name: str
    code: str
    reset_link: str | None = None


@dataclass
class RecordingNotifier:
    """记录发送请求而不真正发邮件。"""

    otp_emails: list[SentEmail] = field(default_factory=list)
    reset_emails: list[SentEmail] = field(default_factory=list)

    def send_otp_email(self, to_email: str, name: str, code: str) -> None:
        self.otp_emails.append(SentEmail(to_email, name, code))

    def send_password_reset_email(self, to_email: str, name: str, code: str, reset_link: str | None = None) -> None:
        self.reset_emails.append(SentEmail(to_email, name, code, reset_link))


class MemoryStorage:
    """内存文件存储，可配置上传失败。"""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_upload = False
        self._counter = 0

    def upload(self, file: UploadedFile, folder: str) -> str:
        if self.fail_upload:
            raise StorageError("bucket unavailable")
        self._counter += 1
        url = f"/uploads/{folder}/{self._counter}-{file.filename}"
        self.files[url] = file.content
        return url

    def delete(self, url: str) -> bool:
        self.deleted.append(url)
        return self.files.pop(url, None) is not None


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    testing_session = sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)
    db = testing_session()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def token_issuer() -> TokenIssuer:
    return TokenIssuer(access_secret=TEST_ACCESS_SECRET, refresh_secret=TEST_REFRESH_SECRET)


@pytest.fixture
def users(db_session: Session) -> UserRepository:
    return UserRepository(db_session)


@pytest.fixture
def sessions(db_session: Session) -> SessionRepository:
    return SessionRepository(db_session)


@pytest.fixture
def auth_service(
    users: UserRepository,
    sessions: SessionRepository,
    token_issuer: TokenIssuer,
    notifier: RecordingNotifier,
    storage: MemoryStorage,
    clock: FakeClock,
) -> AuthService:
    return AuthService(
        users=users,
        sessions=sessions,
        tokens=token_issuer,
        notifier=notifier,
        storage=storage,
        policy=AuthPolicy(password_hash_iterations=TEST_HASH_ITERATIONS, reset_url_base="https://shop.example.com/reset"),
        clock=clock,
    )


@pytest.fixture
def make_verified_user(auth_service: AuthService, notifier: RecordingNotifier) -> Callable[..., User]:
    """注册并完成验证，返回已验证用户。"""

    def _make(email: str = "a@x.com", username: str | None = None, password: str = STRONG_PASSWORD) -> User:
        result = auth_service.register(name="Alice", email=email, password=password, username=username)
        code = notifier.otp_emails[-1].code
        verified = auth_service.verify(Identity(email=email), code)
        assert verified.user.id == result.user.id
        return verified.user

    return _make
