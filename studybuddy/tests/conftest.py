import os

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("EMAIL_BACKEND", "disabled")
os.environ.setdefault("INVITATION_SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_REGION", "us-east-1")

import uuid  # noqa: E402
from collections.abc import Generator  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import StaticPool, create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from studybuddy.api.deps import get_email_sender  # noqa: E402
from studybuddy.core.config import get_settings  # noqa: E402
from studybuddy.core.database import Base, enable_sqlite_savepoints, get_db  # noqa: E402
from studybuddy.core.security import create_access  # noqa: E402
from studybuddy.main import app  # noqa: E402
from studybuddy.models.users import User  # noqa: E402
from studybuddy.schemas.groups import GroupCreate, GroupLevel, TimeCommitment  # noqa: E402
from studybuddy.schemas.users import UserOut  # noqa: E402
from studybuddy.storage import Storage, build_sql_storage  # noqa: E402


class RecordingEmailSender:
    def __init__(self):
        self.sent: list[dict] = []

    def send(self, to: str, subject: str, text: str, html: str | None = None) -> bool:
        self.sent.append({"to": to, "subject": subject, "text": text, "html": html})
        return True


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine) -> Generator[Session]:
    connection = engine.connect()
    trans = connection.begin()

    # Repository commits/rollbacks only touch savepoints inside the outer transaction.
    TestingSessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        trans.rollback()
        connection.close()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def storage(db_session, settings) -> Storage:
    return build_sql_storage(db_session, settings)


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def client(db_session, email_sender) -> Generator[TestClient]:
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_email_sender] = lambda: email_sender
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _create_user(
    db: Session,
    email: str,
    first_name: str = "Test",
    last_name: str = "User",
    is_super_admin: bool = False,
) -> UserOut:
    user = User(
        user_id=uuid.uuid4().hex,
        email=email,
        password_hash=None,
        first_name=first_name,
        last_name=last_name,
        is_super_admin=is_super_admin,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return UserOut.model_validate(user)


def _auth_headers(user: UserOut) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access(user.user_id, user.role)}"}


def _make_group(
    storage: Storage,
    creator: UserOut,
    name: str = "Algo Study",
    concept: str = "Algorithms",
    level: GroupLevel = GroupLevel.intermediate,
    time_commitment: TimeCommitment = TimeCommitment.ten,
    approve_as: UserOut | None = None,
):
    group = storage.groups.create(
        GroupCreate(
            name=name,
            concept=concept,
            level=level,
            time_commitment=time_commitment,
        ),
        creator.user_id,
    )
    if approve_as is not None:
        group = storage.groups.approve(group.group_id, approve_as.user_id)
    return group


@pytest.fixture
def super_admin(db_session) -> UserOut:
    return _create_user(
        db_session, "admin@example.com", "Ada", "Admin", is_super_admin=True
    )


@pytest.fixture
def creator(db_session) -> UserOut:
    return _create_user(db_session, "creator@example.com", "Cora", "Creator")


@pytest.fixture
def student(db_session) -> UserOut:
    return _create_user(db_session, "student@example.com", "Sam", "Student")


@pytest.fixture
def active_group(storage, creator, super_admin):
    return _make_group(storage, creator, approve_as=super_admin)


@pytest.fixture
def make_user(db_session):
    def _factory(email: str, **kwargs) -> UserOut:
        return _create_user(db_session, email, **kwargs)

    return _factory


@pytest.fixture
def auth_headers():
    return _auth_headers


@pytest.fixture
def make_group(storage):
    def _factory(creator: UserOut, **kwargs):
        return _make_group(storage, creator, **kwargs)

    return _factory
