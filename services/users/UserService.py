from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple
import re
import uuid

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from AvatarStorage import AvatarStorage
from DomainModels import Gender, Phone, User
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
from LockRegistry import LockRegistry
from Repositories import Page, Repositories
from UserSchemas import (
    CreateUserRequest,
    PageMetadata,
    PageResponse,
    PhoneResponse,
    UpdatePhoneRequest,
    UpdateUserRequest,
    UserResponse,
)
import UserSpecifications

MAX_AVATAR_BYTES = 5 * 1024 * 1024
MAX_FIRST_NAME_LENGTH = 20
INVALID_FIRST_NAME = "invalid"
ACCEPTABLE_PHONE = re.compile(r"^[\d+\-()\s]+$")

# owner token of the administrative freeze; request-scoped holds get a fresh token each
FREEZE_OWNER = "admin-freeze"

BUSY_MESSAGE = "User is currently being modified by another request"


class UserService:
    """
    Users with an optional phone and avatar.

    Mutations go: load -> business rules -> email uniqueness -> per-user hold ->
    apply the fields that were sent -> save -> release the hold.
    The hold is taken without waiting, so a second concurrent edit of the same
    user fails with LOCKED instead of queueing behind the first one.
    """

    def __init__(
        self,
        repos: Repositories,
        locks: LockRegistry,
        avatars: AvatarStorage,
        max_avatar_bytes: int = MAX_AVATAR_BYTES,
        lock_timeout: Optional[float] = None,
    ):
        self.repos = repos
        self.locks = locks
        self.avatars = avatars
        self.max_avatar_bytes = max_avatar_bytes
        self.lock_timeout = lock_timeout

    # ==================== HELPERS ====================

    @staticmethod
    def _norm_email(email: str) -> str:
        return (email or "").strip().lower()

    @staticmethod
    def _check_first_name(first_name: str) -> str:
        if first_name == INVALID_FIRST_NAME:
            raise UnprocessableEntityError("Invalid first name format")
        if len(first_name) > MAX_FIRST_NAME_LENGTH:
            raise HeaderTooLargeError(
                "First name exceeds %d characters" % MAX_FIRST_NAME_LENGTH
            )
        return first_name

    @staticmethod
    def is_acceptable_phone_number(number: Optional[str]) -> bool:
        return number is not None and ACCEPTABLE_PHONE.match(number) is not None

    def _require_user(self, user_id: int) -> User:
        try:
            user = self.repos.user.get(user_id)
        except SQLAlchemyError as exc:
            raise InternalError("Could not load user %s" % user_id) from exc
        if user is None:
            raise NotFoundError("User not found: %s" % user_id)
        return user

    def _check_email_free(self, email: str) -> None:
        if self.repos.user.exists_by_email(email):
            raise ConflictError("Email already exists: %s" % email)

    def _persist(self, user: User) -> User:
        try:
            return self.repos.user.save(user)
        except IntegrityError as exc:
            # the unique index caught what the pre-check could not (a racing create)
            logger.warning("Unique constraint violated for {}: {}", user.email, exc.orig)
            raise ConflictError("Email already exists: %s" % user.email) from exc
        except StaleDataError as exc:
            raise LockedError(BUSY_MESSAGE) from exc
        except SQLAlchemyError as exc:
            logger.exception("Could not persist user {}", user.id)
            raise InternalError("Could not persist user") from exc

    @contextmanager
    def exclusive(self, user_id: int, message: str = BUSY_MESSAGE) -> Iterator[str]:
        """Hold user_id for the current request, or fail with LOCKED right away."""
        owner = uuid.uuid4().hex
        if not self.locks.try_acquire(user_id, owner):
            logger.info("User {} is held by {}, refusing", user_id, self.locks.holder(user_id))
            raise LockedError(message)
        try:
            yield owner
        finally:
            self.locks.release(user_id, owner)

    def to_response(self, user: User) -> UserResponse:
        phone = None
        if user.phone is not None:
            phone = PhoneResponse(id=user.phone.id, number=user.phone.number, brand=user.phone.brand)
        return UserResponse(
            id=user.id,
            version=user.version,
            firstName=user.first_name,
            lastName=user.last_name,
            email=user.email,
            gender=user.gender,
            phone=phone,
            avatarFileName=user.avatar_file_name,
            hasAvatar=user.has_avatar(),
            locked=self.locks.is_locked(user.id),
        )

    def to_page_response(self, page: Page[User]) -> PageResponse[UserResponse]:
        return PageResponse[UserResponse](
            content=[self.to_response(u) for u in page.content],
            metadata=PageMetadata(
                page=page.page,
                size=page.size,
                totalElements=page.total_elements,
                totalPages=page.total_pages,
                first=page.first,
                last=page.last,
                hasNext=page.has_next,
                hasPrevious=page.has_previous,
            ),
        )

    # ==================== USERS ====================

    def create(self, request: CreateUserRequest) -> UserResponse:
        email = self._norm_email(request.email)
        logger.info("Creating new user with email: {}", email)

        first_name = self._check_first_name(request.firstName)
        self._check_email_free(email)

        user = User(
            first_name=first_name,
            last_name=request.lastName,
            email=email,
            gender=request.gender,
        )
        if request.phone is not None:
            user.phone = Phone(number=request.phone.number, brand=request.phone.brand)

        saved = self._persist(user)
        logger.info("User created successfully with ID: {}", saved.id)
        return self.to_response(saved)

    def get(self, user_id: int) -> UserResponse:
        logger.debug("Fetching user with ID: {}", user_id)
        return self.to_response(self._require_user(user_id))

    def list(
        self,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        gender: Optional[Gender] = None,
        phone_brand: Optional[str] = None,
        phone_number: Optional[str] = None,
        page: int = 0,
        size: int = 10,
        sort: Optional[List[str]] = None,
    ) -> PageResponse[UserResponse]:
        logger.debug(
            "Listing users firstName={} lastName={} email={} gender={} phoneBrand={} phoneNumber={} page={} size={} sort={}",
            first_name, last_name, email, gender, phone_brand, phone_number, page, size, sort,
        )
        spec = UserSpecifications.user_filter(first_name, last_name, email, gender, phone_brand, phone_number)
        try:
            result = self.repos.user.find_all(spec, page, size, UserSpecifications.order_by(sort))
        except SQLAlchemyError as exc:
            raise InternalError("Could not list users") from exc
        logger.debug("Found {} users on page {} of {}", len(result.content), result.page, result.total_pages)
        return self.to_page_response(result)

    def update(self, user_id: int, request: UpdateUserRequest) -> UserResponse:
        logger.info("Updating user with ID: {}", user_id)
        user = self._require_user(user_id)

        if request.version is not None and request.version != user.version:
            raise ConflictError(
                "Version mismatch: expected %s, current %s" % (request.version, user.version)
            )
        if request.firstName is not None:
            self._check_first_name(request.firstName)

        new_email = self._norm_email(request.email) if request.email is not None else None
        if new_email is not None and new_email != user.email:
            self._check_email_free(new_email)

        with self.exclusive(user_id):
            if request.firstName is not None:
                user.first_name = request.firstName
            if request.lastName is not None:
                user.last_name = request.lastName
            if new_email is not None:
                user.email = new_email
            if request.gender is not None:
                user.gender = request.gender
            user.touch()
            saved = self._persist(user)

        logger.info("User updated successfully with ID: {}", user_id)
        return self.to_response(saved)

    def update_phone(self, user_id: int, request: UpdatePhoneRequest) -> UserResponse:
        logger.info("Updating phone for user ID: {}", user_id)
        user = self._require_user(user_id)

        if request.number is not None and not self.is_acceptable_phone_number(request.number):
            raise NotAcceptableError("Phone number format not acceptable")

        with self.exclusive(user_id):
            if user.phone is None:
                user.phone = Phone()
            if request.number is not None:
                user.phone.number = request.number
            if request.brand is not None:
                user.phone.brand = request.brand
            user.touch()
            saved = self._persist(user)

        logger.info("Phone updated successfully for user ID: {}", user_id)
        return self.to_response(saved)

    def delete(self, user_id: int) -> None:
        logger.info("Deleting user with ID: {}", user_id)
        user = self._require_user(user_id)
        if self.locks.is_locked(user_id):
            raise LockedError("User account is locked and cannot be deleted")

        with self.exclusive(user_id, "User account is locked and cannot be deleted"):
            try:
                self.repos.user.delete(user_id)
            except SQLAlchemyError as exc:
                raise InternalError("Could not delete user %s" % user_id) from exc
            if user.avatar_file_name:
                self._discard_avatar(user.avatar_file_name)

        logger.info("User deleted successfully with ID: {}", user_id)

    # ==================== AVATAR ====================

    def _discard_avatar(self, file_name: str) -> None:
        try:
            self.avatars.delete(file_name)
        except OSError as exc:
            logger.warning("Could not delete avatar {}: {}", file_name, exc)

    def check_avatar(self, content: bytes, content_type: Optional[str]) -> None:
        if not content:
            raise UnprocessableEntityError("File is empty")
        if len(content) > self.max_avatar_bytes:
            raise PayloadTooLargeError("File size exceeds maximum allowed")
        if not content_type or not content_type.startswith("image/"):
            raise UnsupportedMediaTypeError("Only image files are allowed")

    def upload_avatar(self, user_id: int, file_name: Optional[str], content: bytes, content_type: Optional[str]) -> UserResponse:
        logger.info("Uploading avatar for user ID: {}", user_id)
        self.check_avatar(content, content_type)
        user = self._require_user(user_id)

        with self.exclusive(user_id):
            previous = user.avatar_file_name
            try:
                stored = self.avatars.store(file_name, content)
            except OSError as exc:
                logger.error("Error uploading avatar for user ID: {}: {}", user_id, exc)
                raise InternalError("Could not store file") from exc

            user.avatar_file_name = stored
            user.avatar_file_size = len(content)
            user.avatar_content_type = content_type
            user.touch()
            try:
                saved = self._persist(user)
            except Exception:
                # the record still names the previous file, which stays in place
                self._discard_avatar(stored)
                raise
            if previous:
                self._discard_avatar(previous)
                logger.debug("Deleted old avatar for user ID: {}", user_id)

        logger.info("Avatar uploaded successfully for user ID: {}", user_id)
        return self.to_response(saved)

    def get_avatar(self, user_id: int) -> Tuple[bytes, str]:
        logger.debug("Fetching avatar for user ID: {}", user_id)
        user = self._require_user(user_id)
        if not user.avatar_file_name:
            raise NotFoundError("Avatar not found for user: %s" % user_id)
        try:
            content = self.avatars.load(user.avatar_file_name)
        except OSError as exc:
            logger.error("Error reading avatar file for user ID: {}: {}", user_id, exc)
            raise InternalError("Could not read file") from exc
        return content, user.avatar_content_type or "application/octet-stream"

    # ==================== ADMINISTRATIVE LOCK ====================

    def _require_exists(self, user_id: int) -> None:
        if not self.repos.user.exists(user_id):
            raise NotFoundError("User not found: %s" % user_id)

    def lock(self, user_id: int, lease: Optional[float] = None) -> None:
        logger.info("Locking user with ID: {}", user_id)
        self._require_exists(user_id)
        if not self.locks.acquire(user_id, FREEZE_OWNER, timeout=self.lock_timeout, lease=lease):
            raise LockedError("User %s could not be locked: already locked" % user_id)

    def unlock(self, user_id: int) -> bool:
        logger.info("Unlocking user with ID: {}", user_id)
        self._require_exists(user_id)
        released = self.locks.release(user_id, FREEZE_OWNER)
        if not released:
            logger.debug("User {} was not frozen", user_id)
        return released

    def is_locked(self, user_id: int) -> bool:
        self._require_exists(user_id)
        return self.locks.is_locked(user_id)

    def simulate_internal_error(self) -> None:
        logger.error("Simulating internal server error")
        raise InternalError("Simulated internal server error")

    # ==================== SEED ====================

    def seed(self) -> int:
        if self.repos.user.count() > 0:
            return 0
        ivan = User(first_name="Ivan", last_name="Petrov", email="ivan.petrov@example.com", gender=Gender.MALE)
        ivan.phone = Phone(number="+7-999-111-22-33", brand="Samsung")
        anna = User(first_name="Anna", last_name="Ivanova", email="anna.ivanova@example.com", gender=Gender.FEMALE)
        seeded = [ivan, anna]
        for user in seeded:
            self.repos.user.save(user)
        logger.info("Seeded {} users", len(seeded))
        return len(seeded)
