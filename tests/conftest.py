import os
from typing import Any, Dict, Generator, List, Tuple

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")

from common.config import get_settings, reset_settings_cache  # noqa: E402

reset_settings_cache()

from common.database import Base, SessionLocal, engine  # noqa: E402
from common.dependencies import get_notifier  # noqa: E402
from common.models import RoleEnum, User  # noqa: E402
from common.notifications import Notifier  # noqa: E402
from services.analytics.app import app as analytics_app  # noqa: E402
from services.announcements.app import app as announcements_app  # noqa: E402
from services.applications.app import app as applications_app  # noqa: E402
from services.billing.app import app as billing_app  # noqa: E402
from services.maintenance.app import app as maintenance_app  # noqa: E402
from services.rooms.app import app as rooms_app  # noqa: E402
from services.students.app import app as students_app  # noqa: E402
from services.users.app import app as users_app  # noqa: E402

PASSWORD = "Passw0rd!"


class RecordingNotifier(Notifier):
    """Keeps published events in memory instead of talking to RabbitMQ."""

    def __init__(self) -> None:
        super().__init__(get_settings())
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [event for event, _ in self.events]


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    rooms_app.state.status_cache.clear()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def notifier() -> Generator[RecordingNotifier, None, None]:
    recording = RecordingNotifier()
    apps = (rooms_app, students_app, applications_app)
    for fastapi_app in apps:
        fastapi_app.dependency_overrides[get_notifier] = lambda: recording
    yield recording
    for fastapi_app in apps:
        fastapi_app.dependency_overrides.pop(get_notifier, None)


@pytest.fixture()
def users_client() -> Generator[TestClient, None, None]:
    with TestClient(users_app) as client:
        yield client


@pytest.fixture()
def rooms_client() -> Generator[TestClient, None, None]:
    with TestClient(rooms_app) as client:
        yield client


@pytest.fixture()
def students_client() -> Generator[TestClient, None, None]:
    with TestClient(students_app) as client:
        yield client


@pytest.fixture()
def applications_client() -> Generator[TestClient, None, None]:
    with TestClient(applications_app) as client:
        yield client


@pytest.fixture()
def maintenance_client() -> Generator[TestClient, None, None]:
    with TestClient(maintenance_app) as client:
        yield client


@pytest.fixture()
def announcements_client() -> Generator[TestClient, None, None]:
    with TestClient(announcements_app) as client:
        yield client


@pytest.fixture()
def billing_client() -> Generator[TestClient, None, None]:
    with TestClient(billing_app) as client:
        yield client


@pytest.fixture()
def analytics_client() -> Generator[TestClient, None, None]:
    with TestClient(analytics_app) as client:
        yield client


def register(client: TestClient, username: str, role: RoleEnum = RoleEnum.STUDENT, **extra: Any) -> Dict[str, Any]:
    payload = {
        "name": extra.pop("name", username.title()),
        "username": username,
        "email": extra.pop("email", f"{username}@example.com"),
        "password": PASSWORD,
        "role": role.value,
        **extra,
    }
    response = client.post("/users/register", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def auth_header(client: TestClient, username: str, password: str = PASSWORD) -> Dict[str, str]:
    response = client.post(
        "/users/login",
        data={"username": username, "password": password},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin_headers(users_client: TestClient) -> Dict[str, str]:
    register(users_client, "admin", RoleEnum.ADMIN)
    return auth_header(users_client, "admin")


@pytest.fixture()
def staff_headers(users_client: TestClient, admin_headers: Dict[str, str]) -> Dict[str, str]:
    # Elevated roles are closed once an admin exists, so promote directly.
    register(users_client, "staff")
    session = SessionLocal()
    try:
        user = session.query(User).filter(User.username == "staff").one()
        user.role = RoleEnum.STAFF
        session.commit()
    finally:
        session.close()
    return auth_header(users_client, "staff")


@pytest.fixture()
def student_headers(users_client: TestClient) -> Dict[str, str]:
    register(users_client, "alice", phone="555-0100")
    return auth_header(users_client, "alice")


def room_payload(room_number: str = "A101", capacity: int = 2, **extra: Any) -> Dict[str, Any]:
    payload = {"room_number": room_number, "type": "double", "capacity": capacity, "price": 500}
    payload.update(extra)
    return payload


def student_payload(name: str = "Sam", **extra: Any) -> Dict[str, Any]:
    payload = {"name": name, "email": f"{name.lower()}@students.example.com", "phone": "555-0101"}
    payload.update(extra)
    return payload
