from typing import Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from DomainModels import Gender

T = TypeVar("T")

PHONE_PATTERN = r"^[\d+\-()\s]*$"


class RequestModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


# ==================== REQUESTS ====================

class PhoneIn(RequestModel):
    number: Optional[str] = Field(None, max_length=20, pattern=PHONE_PATTERN)
    brand: Optional[str] = Field(None, max_length=50)


class CreateUserRequest(RequestModel):
    firstName: str = Field(..., min_length=1, max_length=100)
    lastName: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    gender: Gender
    phone: Optional[PhoneIn] = None


class UpdateUserRequest(RequestModel):
    firstName: Optional[str] = Field(None, min_length=1, max_length=100)
    lastName: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    gender: Optional[Gender] = None
    # when given, must match the stored version
    version: Optional[int] = None


class UpdatePhoneRequest(RequestModel):
    number: Optional[str] = Field(None, max_length=20)
    brand: Optional[str] = Field(None, max_length=50)


class LoginRequest(BaseModel):
    username: str
    password: str


# ==================== RESPONSES ====================

class PhoneResponse(BaseModel):
    id: int
    number: Optional[str] = None
    brand: Optional[str] = None


class UserResponse(BaseModel):
    id: int
    version: int
    firstName: str
    lastName: str
    email: str
    gender: Gender
    phone: Optional[PhoneResponse] = None
    avatarFileName: Optional[str] = None
    hasAvatar: bool = False
    locked: bool = False


class PageMetadata(BaseModel):
    page: int
    size: int
    totalElements: int
    totalPages: int
    first: bool
    last: bool
    hasNext: bool
    hasPrevious: bool


class PageResponse(BaseModel, Generic[T]):
    content: List[T]
    metadata: PageMetadata


class MessageResponse(BaseModel):
    message: str


class LockStatusResponse(BaseModel):
    locked: bool


class PrincipalResponse(BaseModel):
    username: str
    role: str


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: Optional[Dict[str, str]] = None
