import os
import threading
import time

import pytest
from sqlalchemy.exc import OperationalError

from DomainModels import Gender
from Errors import (
    ConflictError,
    HeaderTooLargeError,
    InternalError,
    LockedError,
    NotAcceptableError,
    NotFoundError,
    PayloadTooLargeError,
    UnprocessableEntityError,
    UnsupportedMediaTypeError,
)
from UserSchemas import UpdatePhoneRequest, UpdateUserRequest
from UserService import FREEZE_OWNER

JPEG = b"\xff\xd8\xff\xe0" + os.urandom(10 * 1024)


# ==================== CREATE / GET ====================

def test_create_then_get_round_trip(service, new_user):
    created = service.create(new_user(phone={"number": "+7-999-111-22-33", "brand": "Samsung"}))
    fetched = service.get(created.id)
    assert fetched.firstName == "Ivan"
    assert fetched.lastName == "Petrov"
    assert fetched.email == "ivan.petrov@example.com"
    assert fetched.gender == Gender.MALE
    assert fetched.phone.number == "+7-999-111-22-33"
    assert fetched.phone.brand == "Samsung"
    assert fetched.hasAvatar is False
    assert fetched.locked is False
    assert fetched.version == created.version


def test_create_without_phone_has_no_phone(service, new_user):
    created = service.create(new_user())
    assert service.get(created.id).phone is None


def test_get_unknown_user(service):
    with pytest.raises(NotFoundError):
        service.get(9999)


def test_email_is_unique_after_normalisation(service, new_user):
    service.create(new_user(email="Dup@Example.com"))
    with pytest.raises(ConflictError):
        service.create(new_user(first="Other", email="dup@example.com"))


def test_store_constraint_maps_to_conflict(service, new_user, monkeypatch):
    service.create(new_user(email="race@example.com"))
    monkeypatch.setattr(service.repos.user, "exists_by_email", lambda email: False)
    with pytest.raises(ConflictError):
        service.create(new_user(first="Racer", email="race@example.com"))


def test_invalid_first_name_is_unprocessable(service, new_user):
    with pytest.raises(UnprocessableEntityError):
        service.create(new_user(first="invalid"))


def test_long_first_name_triggers_header_too_large(service, new_user):
    with pytest.raises(HeaderTooLargeError):
        service.create(new_user(first="A" * 21))
    assert service.create(new_user(first="A" * 20)).firstName == "A" * 20


# ==================== UPDATE ====================

def test_update_is_partial_and_bumps_version(service, new_user):
    created = service.create(new_user())
    updated = service.update(created.id, UpdateUserRequest(lastName="Sidorov"))
    assert updated.lastName == "Sidorov"
    assert updated.firstName == "Ivan"
    assert updated.email == "ivan.petrov@example.com"
    assert updated.version == created.version + 1


def test_update_email_conflict(service, new_user):
    service.create(new_user(email="taken@example.com"))
    other = service.create(new_user(first="Anna", email="anna@example.com"))
    with pytest.raises(ConflictError):
        service.update(other.id, UpdateUserRequest(email="TAKEN@example.com"))
    # own address in a different case is not a conflict
    same = service.update(other.id, UpdateUserRequest(email="Anna@Example.com"))
    assert same.email == "anna@example.com"


def test_update_with_stale_version_conflicts(service, new_user):
    created = service.create(new_user())
    service.update(created.id, UpdateUserRequest(lastName="Once"))
    with pytest.raises(ConflictError):
        service.update(created.id, UpdateUserRequest(lastName="Twice", version=created.version))


def test_update_business_rules(service, new_user):
    created = service.create(new_user())
    with pytest.raises(UnprocessableEntityError):
        service.update(created.id, UpdateUserRequest(firstName="invalid"))
    with pytest.raises(HeaderTooLargeError):
        service.update(created.id, UpdateUserRequest(firstName="B" * 25))
    with pytest.raises(NotFoundError):
        service.update(9999, UpdateUserRequest(lastName="Nobody"))


def test_update_refused_while_held(service, new_user):
    created = service.create(new_user())
    assert service.locks.try_acquire(created.id, "someone-else")
    with pytest.raises(LockedError):
        service.update(created.id, UpdateUserRequest(lastName="Blocked"))
    assert service.locks.holder(created.id) == "someone-else"


def test_hold_released_after_success_and_failure(service, new_user, monkeypatch):
    created = service.create(new_user())
    service.update(created.id, UpdateUserRequest(lastName="Fine"))
    assert len(service.locks) == 0

    def broken_save(user):
        raise OperationalError("UPDATE users", {}, Exception("disk I/O error"))

    monkeypatch.setattr(service.repos.user, "save", broken_save)
    with pytest.raises(InternalError):
        service.update(created.id, UpdateUserRequest(lastName="Broken"))
    assert service.locks.is_locked(created.id) is False


def test_concurrent_updates_second_is_locked(service, new_user, monkeypatch):
    created = service.create(new_user())
    entered = threading.Event()
    proceed = threading.Event()
    real_save = service.repos.user.save

    def slow_save(user):
        entered.set()
        proceed.wait(timeout=5)
        return real_save(user)

    monkeypatch.setattr(service.repos.user, "save", slow_save)
    outcome = {}

    def first():
        outcome["first"] = service.update(created.id, UpdateUserRequest(lastName="First"))

    t = threading.Thread(target=first)
    t.start()
    assert entered.wait(timeout=5)
    with pytest.raises(LockedError):
        service.update(created.id, UpdateUserRequest(lastName="Second"))
    proceed.set()
    t.join(timeout=5)

    assert outcome["first"].lastName == "First"
    assert service.get(created.id).lastName == "First"
    assert service.locks.is_locked(created.id) is False


# ==================== PHONE ====================

def test_phone_number_charset(service, new_user):
    created = service.create(new_user())
    with pytest.raises(NotAcceptableError):
        service.update_phone(created.id, UpdatePhoneRequest(number="abc"))
    updated = service.update_phone(created.id, UpdatePhoneRequest(number="+7-999-111-22-33"))
    assert updated.phone.number == "+7-999-111-22-33"


def test_phone_created_on_first_write_then_partially_updated(service, new_user):
    created = service.create(new_user())
    assert created.phone is None
    with_brand = service.update_phone(created.id, UpdatePhoneRequest(brand="Nokia"))
    assert with_brand.phone.brand == "Nokia"
    assert with_brand.phone.number is None
    assert with_brand.version == created.version + 1

    with_number = service.update_phone(created.id, UpdatePhoneRequest(number="(495) 123 45 67"))
    assert with_number.phone.brand == "Nokia"
    assert with_number.phone.number == "(495) 123 45 67"
    assert with_number.phone.id == with_brand.phone.id


# ==================== DELETE / LOCK ====================

def test_delete_while_locked_then_after_unlock(service, new_user):
    created = service.create(new_user())
    service.lock(created.id)
    assert service.is_locked(created.id) is True
    with pytest.raises(LockedError):
        service.delete(created.id)
    service.unlock(created.id)
    assert service.is_locked(created.id) is False
    service.delete(created.id)
    with pytest.raises(NotFoundError):
        service.get(created.id)


def test_delete_unknown_user(service):
    with pytest.raises(NotFoundError):
        service.delete(9999)


def test_lock_status_never_locked(service, new_user):
    created = service.create(new_user())
    assert service.is_locked(created.id) is False
    assert service.get(created.id).locked is False


def test_frozen_user_refuses_updates(service, new_user):
    created = service.create(new_user())
    service.lock(created.id)
    assert service.get(created.id).locked is True
    assert service.locks.holder(created.id) == FREEZE_OWNER
    with pytest.raises(LockedError):
        service.update(created.id, UpdateUserRequest(lastName="Frozen"))
    with pytest.raises(LockedError):
        service.update_phone(created.id, UpdatePhoneRequest(brand="Frozen"))


def test_second_lock_times_out(service, new_user):
    created = service.create(new_user())
    service.lock(created.id)
    with pytest.raises(LockedError):
        service.lock(created.id)


def test_lock_lease_lapses(service, new_user):
    created = service.create(new_user())
    service.lock(created.id, lease=0.05)
    assert service.is_locked(created.id) is True
    time.sleep(0.1)
    assert service.is_locked(created.id) is False


def test_unlock_without_lock_is_noop(service, new_user):
    created = service.create(new_user())
    assert service.unlock(created.id) is False


def test_lock_unknown_user(service):
    with pytest.raises(NotFoundError):
        service.lock(9999)
    with pytest.raises(NotFoundError):
        service.unlock(9999)
    with pytest.raises(NotFoundError):
        service.is_locked(9999)


# ==================== AVATAR ====================

def test_avatar_round_trip(service, new_user):
    created = service.create(new_user())
    updated = service.upload_avatar(created.id, "me.jpg", JPEG, "image/jpeg")
    assert updated.hasAvatar is True
    assert updated.avatarFileName.endswith("_me.jpg")
    content, content_type = service.get_avatar(created.id)
    assert content == JPEG
    assert content_type == "image/jpeg"


def test_avatar_replacement_removes_old_file(service, new_user):
    created = service.create(new_user())
    first = service.upload_avatar(created.id, "one.png", b"\x89PNG-one", "image/png")
    second = service.upload_avatar(created.id, "two.png", b"\x89PNG-two", "image/png")
    assert first.avatarFileName != second.avatarFileName
    assert not (service.avatars.root / first.avatarFileName).exists()
    assert (service.avatars.root / second.avatarFileName).exists()
    assert service.get_avatar(created.id)[0] == b"\x89PNG-two"


def test_failed_avatar_replacement_keeps_previous(service, new_user, monkeypatch):
    created = service.create(new_user())
    first = service.upload_avatar(created.id, "a.png", b"\x89PNG-a", "image/png")

    def broken_save(user):
        raise OperationalError("UPDATE users", {}, Exception("disk I/O error"))

    monkeypatch.setattr(service.repos.user, "save", broken_save)
    with pytest.raises(InternalError):
        service.upload_avatar(created.id, "b.png", b"\x89PNG-b", "image/png")
    monkeypatch.undo()

    assert service.get(created.id).avatarFileName == first.avatarFileName
    assert service.get_avatar(created.id) == (b"\x89PNG-a", "image/png")
    assert sorted(p.name for p in service.avatars.root.iterdir()) == [first.avatarFileName]
    assert service.locks.is_locked(created.id) is False


def test_avatar_rejections(service, new_user):
    created = service.create(new_user())
    with pytest.raises(UnprocessableEntityError):
        service.upload_avatar(created.id, "empty.jpg", b"", "image/jpeg")
    with pytest.raises(PayloadTooLargeError):
        service.upload_avatar(created.id, "big.jpg", b"\0" * (6 * 1024 * 1024), "image/jpeg")
    with pytest.raises(UnsupportedMediaTypeError):
        service.upload_avatar(created.id, "notes.txt", b"hello", "text/plain")
    with pytest.raises(NotFoundError):
        service.upload_avatar(9999, "me.jpg", JPEG, "image/jpeg")


def test_avatar_exactly_at_limit_is_accepted(service, new_user):
    created = service.create(new_user())
    service.max_avatar_bytes = 1024
    assert service.upload_avatar(created.id, "a.gif", b"G" * 1024, "image/gif").hasAvatar is True
    with pytest.raises(PayloadTooLargeError):
        service.upload_avatar(created.id, "b.gif", b"G" * 1025, "image/gif")


def test_get_avatar_missing(service, new_user):
    created = service.create(new_user())
    with pytest.raises(NotFoundError):
        service.get_avatar(created.id)


def test_avatar_file_name_cannot_escape_storage(service, new_user):
    created = service.create(new_user())
    updated = service.upload_avatar(created.id, "../../etc/passwd.png", JPEG, "image/png")
    assert "/" not in updated.avatarFileName
    assert (service.avatars.root / updated.avatarFileName).exists()


def test_delete_removes_avatar_bytes(service, new_user):
    created = service.create(new_user())
    updated = service.upload_avatar(created.id, "me.jpg", JPEG, "image/jpeg")
    service.delete(created.id)
    assert not (service.avatars.root / updated.avatarFileName).exists()


# ==================== MISC ====================

def test_simulate_internal_error(service):
    with pytest.raises(InternalError):
        service.simulate_internal_error()


def test_seed_only_into_empty_store(service):
    assert service.seed() == 2
    assert service.seed() == 0
    page = service.list()
    assert [u.firstName for u in page.content] == ["Ivan", "Anna"]
    assert page.content[0].phone.brand == "Samsung"


def test_list_filters_through_service(service, new_user):
    service.create(new_user(phone={"number": "+7-999-111-22-33", "brand": "Samsung"}))
    service.create(new_user(first="Anna", last="Ivanova", email="anna@example.com", gender=Gender.FEMALE))
    page = service.list(phone_brand="SAMS")
    assert [u.firstName for u in page.content] == ["Ivan"]
    assert page.metadata.totalElements == 1
    page = service.list(sort=["nonExistentField,asc"])
    assert [u.firstName for u in page.content] == ["Ivan", "Anna"]
