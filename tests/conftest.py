import os
import tempfile

# the app reads its configuration at import time
_TMP = tempfile.mkdtemp(prefix="users-service-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TMP, "users.db")
os.environ["AVATAR_DIR"] = os.path.join(_TMP, "avatars")
os.environ["SEED_DATA"] = "false"
os.environ["LOCK_ACQUIRE_TIMEOUT"] = "0.2"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
from fastapi.testclient import TestClient

import main
from AvatarStorage import AvatarStorage
from DomainModels import Gender
from LockRegistry import LockRegistry
from Repositories import Repositories
from UserSchemas import CreateUserRequest, PhoneIn
from UserService import UserService

ADMIN = ("admin", "admin")
PEASANT = ("peasant", "peasant")


@pytest.fixture(autouse=True)
def fresh_app_state(monkeypatch):
    main.repos.drop_schema()
    main.repos.create_schema()
    monkeypatch.setattr(main.user_service, "locks", LockRegistry())
    yield


@pytest.fixture
def client():
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def admin_client(client):
    client.auth = ADMIN
    return client


@pytest.fixture
def peasant_client(client):
    client.auth = PEASANT
    return client


@pytest.fixture
def repos(tmp_path):
    r = Repositories("sqlite:///" + str(tmp_path / "unit.db"))
    r.create_schema()
    yield r
    r.dispose()


@pytest.fixture
def service(repos, tmp_path):
    return UserService(
        repos,
        LockRegistry(),
        AvatarStorage(str(tmp_path / "avatars")),
        lock_timeout=0.05,
    )


def _new_user(first="Ivan", last="Petrov", email="ivan.petrov@example.com", gender=Gender.MALE, phone=None):
    return CreateUserRequest(
        firstName=first,
        lastName=last,
        email=email,
        gender=gender,
        phone=PhoneIn(**phone) if phone else None,
    )


def _user_payload(first="Ivan", last="Petrov", email="ivan.petrov@example.com", gender="MALE", phone=None):
    body = {"firstName": first, "lastName": last, "email": email, "gender": gender}
    if phone is not None:
        body["phone"] = phone
    return body


@pytest.fixture
def new_user():
    return _new_user


@pytest.fixture
def user_payload():
    return _user_payload
