import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_JSON", "false")

import httpx  # noqa: E402
import pytest  # noqa: E402

from core.credential_store import get_user  # noqa: E402
from core.database import init_models, utcnow  # noqa: E402
from main import create_app  # noqa: E402
from models.employee import Employee  # noqa: E402
from models.user import User  # noqa: E402
from settings import Settings  # noqa: E402


class FakeClock:
    """Mutable stand-in for utcnow so tests can move time forward."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@dataclass
class SentOtp:
    email: str
    employee_name: str
    otp_code: str
    expires_at: datetime


@dataclass
class RecordingNotifier:
    sent: List[SentOtp] = field(default_factory=list)
    fail: bool = False

    async def send_otp(self, *, email, employee_name, otp_code, expires_at):
        if self.fail:
            raise ConnectionError("SMTP unreachable")
        self.sent.append(SentOtp(email, employee_name, otp_code, expires_at))

    @property
    def last_code(self) -> str:
        return self.sent[-1].otp_code


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'auth.db'}",
        access_token_secret="test-access-secret-for-automation-only-0123456789",
        refresh_token_secret="test-refresh-secret-for-automation-only-9876543210",
        otp_max_requests_development=5,
        log_json=False,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def app(settings, notifier, clock):
    application = create_app(settings, notifier=notifier, clock=clock)
    await init_models(application.state.engine)
    yield application
    await application.state.engine.dispose()


@pytest.fixture
async def session(app):
    async with app.state.sessionmaker() as s:
        yield s


@pytest.fixture
def otp_engine(app):
    return app.state.otp_engine


@pytest.fixture
def token_engine(app):
    return app.state.token_engine


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
def make_account(session):
    """Factory: employee + bound account. Returns the User with employee loaded."""

    async def _make(
        employee_id: str = "EMP001",
        role: str = "staff",
        is_active: bool = True,
        name: str = "Test Employee",
        email: Optional[str] = None,
        office: str = "College of Engineering",
    ) -> User:
        employee = Employee(
            employee_id=employee_id,
            employee_name=name,
            email=email or f"{employee_id.lower()}@example.edu",
            office_college=office,
        )
        session.add(employee)
        await session.flush()
        user = User(employee_pk=employee.id, role=role, is_active=is_active)
        session.add(user)
        await session.commit()
        return await get_user(session, user.id)

    return _make


@pytest.fixture
def make_employee(session):
    async def _make(employee_id: str = "EMP100", name: str = "Unbound Employee") -> Employee:
        employee = Employee(
            employee_id=employee_id,
            employee_name=name,
            email=f"{employee_id.lower()}@example.edu",
            office_college="Registrar",
        )
        session.add(employee)
        await session.commit()
        return employee

    return _make
