from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Enum as SAEnum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"


class Phone(Base):
    __tablename__ = "phones"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    number: Mapped[Optional[str]] = mapped_column(String(20))
    brand: Mapped[Optional[str]] = mapped_column(String(50))

    owner: Mapped["User"] = relationship(back_populates="phone")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_email", "email", unique=True),
        Index("idx_users_last_first", "last_name", "first_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    gender: Mapped[Gender] = mapped_column(SAEnum(Gender, native_enum=False, length=16), nullable=False)
    avatar_file_name: Mapped[Optional[str]] = mapped_column(String(512))
    avatar_file_size: Mapped[Optional[int]] = mapped_column(Integer)
    avatar_content_type: Mapped[Optional[str]] = mapped_column(String(255))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    # the phone row has no life of its own: it goes away with its owner or when replaced
    phone: Mapped[Optional[Phone]] = relationship(
        back_populates="owner",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    # every flushed UPDATE bumps version and checks the previous value
    __mapper_args__ = {"version_id_col": version}

    def has_avatar(self) -> bool:
        return self.avatar_file_name is not None

    def touch(self) -> None:
        self.updated_at = datetime.utcnow()
