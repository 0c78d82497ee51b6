from dataclasses import dataclass
from typing import Any, Generic, List, Optional, Sequence, TypeVar
import math

from loguru import logger
from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from DomainModels import Base, User
from UserSpecifications import Specification

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    content: List[T]
    page: int
    size: int
    total_elements: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_elements / self.size) if self.size else 0

    @property
    def first(self) -> bool:
        return self.page == 0

    @property
    def last(self) -> bool:
        return self.page + 1 >= self.total_pages

    @property
    def has_next(self) -> bool:
        return not self.last

    @property
    def has_previous(self) -> bool:
        return self.page > 0


class UserRepo:
    """
    Users and their phones in a relational store.
    Every call runs in its own session and hands back detached objects;
    save() merges a detached user back, which is where a stale version is caught.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, user_id: int) -> Optional[User]:
        with self._session_factory() as session:
            return session.get(User, user_id)

    def exists(self, user_id: int) -> bool:
        with self._session_factory() as session:
            return session.scalar(select(func.count()).select_from(User).where(User.id == user_id)) > 0

    def exists_by_email(self, email: str) -> bool:
        with self._session_factory() as session:
            return session.scalar(select(func.count()).select_from(User).where(User.email == email)) > 0

    def count(self) -> int:
        with self._session_factory() as session:
            return session.scalar(select(func.count()).select_from(User))

    def find_all(
        self,
        spec: Optional[Specification],
        page: int,
        size: int,
        order: Sequence[Any],
    ) -> Page[User]:
        spec = spec or Specification()
        ids = spec.apply(select(User.id)).subquery()
        stmt = spec.apply(select(User)).order_by(*order).offset(page * size).limit(size)
        with self._session_factory() as session:
            total = session.scalar(select(func.count()).select_from(ids))
            items = list(session.scalars(stmt).all())
        return Page(content=items, page=page, size=size, total_elements=total)

    def save(self, user: User) -> User:
        with self._session_factory.begin() as session:
            if user.id is None:
                session.add(user)
            else:
                user = session.merge(user)
            session.flush()
            # the returned object outlives the session; a new user's phone was never loaded
            session.refresh(user, ["phone"])
            return user

    def delete(self, user_id: int) -> bool:
        with self._session_factory.begin() as session:
            user = session.get(User, user_id)
            if user is None:
                return False
            session.delete(user)
            return True


# convenience container grouping repositories
class Repositories:
    def __init__(self, database_url: str, echo: bool = False):
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine: Engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.user = UserRepo(self.session_factory)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.debug("Schema ready on {}", self.engine.url)

    def drop_schema(self) -> None:
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
