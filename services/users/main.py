import os
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import jwt
from fastapi import Depends, FastAPI, File, Query, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from loguru import logger

from AvatarStorage import AvatarStorage
from DomainModels import Gender
from Errors import ForbiddenError, UnauthorizedError, register_error_handlers
from LockRegistry import LockRegistry
from LoggingConfig import setup_logging
from Repositories import Repositories
from UserSchemas import (
    CreateUserRequest,
    LockStatusResponse,
    LoginRequest,
    MessageResponse,
    PageResponse,
    PrincipalResponse,
    UpdatePhoneRequest,
    UpdateUserRequest,
    UserResponse,
)
from UserService import UserService


def env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./users.db")
AVATAR_DIR = os.getenv("AVATAR_DIR", "uploads/avatars")
MAX_AVATAR_BYTES = int(os.getenv("MAX_AVATAR_BYTES", str(5 * 1024 * 1024)))
LOCK_ACQUIRE_TIMEOUT = float(os.getenv("LOCK_ACQUIRE_TIMEOUT", "10"))
LOCK_LEASE_SECONDS = float(os.getenv("LOCK_LEASE_SECONDS", "0"))
SEED_DATA = env_flag("SEED_DATA", "true")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_EXPIRY_HOURS = int(os.getenv("JWT_EXPIRY_HOURS", "24"))
ALGORITHM = "HS256"
COOKIE_NAME = "access_token"

ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin")
PEASANT_USERNAME = os.getenv("PEASANT_USERNAME", "peasant")
PEASANT_PASSWORD = os.getenv("PEASANT_PASSWORD", "peasant")

API_PREFIX = "/api/v1/users"
API_VERSION = "v1"
TRACE_ID_HEADER = "X-Trace-Id"

setup_logging(LOG_LEVEL, "users")

repos = Repositories(DATABASE_URL)
repos.create_schema()
user_service = UserService(
    repos,
    LockRegistry(),
    AvatarStorage(AVATAR_DIR),
    max_avatar_bytes=MAX_AVATAR_BYTES,
    lock_timeout=LOCK_ACQUIRE_TIMEOUT,
)
if SEED_DATA:
    user_service.seed()

app = FastAPI(title="Users service", version="1.0.0")

origins = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:5173,http://127.0.0.1:5173,http://localhost,http://127.0.0.1",
).split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in origins if o],
    allow_origin_regex=".*",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


@app.middleware("http")
async def trace_requests(request: Request, call_next):
    trace_id = request.headers.get(TRACE_ID_HEADER) or "trace-" + uuid.uuid4().hex[:8]
    with logger.contextualize(trace_id=trace_id):
        client = request.client.host if request.client else "-"
        logger.info(
            "{} {} (IP: {}, User-Agent: {})",
            request.method, request.url.path, client, request.headers.get("user-agent"),
        )
        response = await call_next(request)
        logger.info("Response: {}", response.status_code)
    response.headers[TRACE_ID_HEADER] = trace_id
    if request.url.path.startswith(API_PREFIX):
        response.headers["X-API-Version"] = API_VERSION
    return response


# ==================== AUTH ====================

# Demo principals (no database)
PRINCIPALS: Dict[str, Dict[str, str]] = {
    ADMIN_USERNAME: {"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD, "role": "ADMIN"},
    PEASANT_USERNAME: {"username": PEASANT_USERNAME, "password": PEASANT_PASSWORD, "role": "PEASANT"},
}

basic_auth = HTTPBasic(auto_error=False)
CHALLENGE = {"WWW-Authenticate": "Basic"}


def authenticate(username: str, password: str) -> Optional[Dict[str, str]]:
    principal = PRINCIPALS.get(username)
    if principal is None:
        return None
    if not secrets.compare_digest(password.encode("utf-8"), principal["password"].encode("utf-8")):
        return None
    return principal


def create_token(principal: Dict[str, str]) -> str:
    payload = {
        "sub": principal["username"],
        "role": principal["role"],
        "exp": datetime.utcnow() + timedelta(hours=JWT_EXPIRY_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except jwt.InvalidTokenError as exc:
        raise UnauthorizedError("unauthorized", headers=CHALLENGE) from exc


def get_principal(
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(basic_auth),
) -> Dict[str, str]:
    if credentials is not None:
        principal = authenticate(credentials.username, credentials.password)
        if principal is None:
            raise UnauthorizedError("Bad credentials", headers=CHALLENGE)
        return principal

    token = request.cookies.get(COOKIE_NAME)
    if not token:
        raise UnauthorizedError("Authentication required", headers=CHALLENGE)
    payload = decode_token(token)
    principal = PRINCIPALS.get(payload.get("sub"))
    if principal is None or principal["role"] != payload.get("role"):
        raise UnauthorizedError("unauthorized", headers=CHALLENGE)
    return principal


def require_role(*roles: str):
    def role_checker(principal: Dict[str, str] = Depends(get_principal)) -> Dict[str, str]:
        if principal["role"] not in roles:
            raise ForbiddenError("Insufficient permissions")
        return principal

    return role_checker


require_admin = require_role("ADMIN")
require_reader = require_role("ADMIN", "PEASANT")


@app.get("/health")
async def health():
    return {"ok": True, "svc": "users"}


@app.post("/auth/login")
def login(data: LoginRequest, response: Response):
    principal = authenticate(data.username.strip(), data.password)
    if principal is None:
        raise UnauthorizedError("invalid credentials")

    token = create_token(principal)
    response.set_cookie(
        COOKIE_NAME,
        token,
        httponly=True,
        samesite="lax",
        secure=False,
        max_age=60 * 60 * JWT_EXPIRY_HOURS,
        path="/",
    )
    return {"ok": True, "user": PrincipalResponse(username=principal["username"], role=principal["role"])}


@app.post("/auth/logout")
def logout(response: Response):
    response.delete_cookie(COOKIE_NAME, path="/")
    return {"ok": True}


@app.get("/auth/me", response_model=PrincipalResponse)
def me(principal=Depends(get_principal)):
    return PrincipalResponse(username=principal["username"], role=principal["role"])


# ==================== USERS ====================

@app.get(API_PREFIX, response_model=PageResponse[UserResponse])
def list_users(
    firstName: Optional[str] = None,
    lastName: Optional[str] = None,
    email: Optional[str] = None,
    gender: Optional[Gender] = None,
    phoneBrand: Optional[str] = None,
    phoneNumber: Optional[str] = None,
    page: int = Query(0, ge=0),
    size: int = Query(10, ge=1, le=100),
    sort: Optional[List[str]] = Query(None),
    principal=Depends(require_reader),
):
    result = user_service.list(
        first_name=firstName,
        last_name=lastName,
        email=email,
        gender=gender,
        phone_brand=phoneBrand,
        phone_number=phoneNumber,
        page=page,
        size=size,
        sort=sort,
    )
    logger.info(
        "Returning {} users on page {} of {}",
        len(result.content), page, result.metadata.totalPages,
    )
    return result


@app.post(API_PREFIX, response_model=UserResponse)
def create_user(payload: CreateUserRequest, principal=Depends(require_admin)):
    return user_service.create(payload)


# registered before /{user_id} so the literal segment wins
@app.post(API_PREFIX + "/simulate-error", response_model=MessageResponse)
def simulate_error(principal=Depends(require_admin)):
    logger.warning("Simulating internal server error")
    user_service.simulate_internal_error()
    return MessageResponse(message="This should not be reached")


@app.get(API_PREFIX + "/{user_id}", response_model=UserResponse)
def get_user(user_id: int, principal=Depends(require_reader)):
    return user_service.get(user_id)


@app.post(API_PREFIX + "/{user_id}", response_model=UserResponse)
def update_user(user_id: int, payload: UpdateUserRequest, principal=Depends(require_admin)):
    return user_service.update(user_id, payload)


@app.delete(API_PREFIX + "/{user_id}", response_model=MessageResponse)
def delete_user(user_id: int, principal=Depends(require_admin)):
    user_service.delete(user_id)
    return MessageResponse(message="User deleted successfully")


@app.post(API_PREFIX + "/{user_id}/phone", response_model=UserResponse)
def update_phone(user_id: int, payload: UpdatePhoneRequest, principal=Depends(require_admin)):
    return user_service.update_phone(user_id, payload)


@app.post(API_PREFIX + "/{user_id}/avatar", response_model=MessageResponse)
def upload_avatar(user_id: int, file: UploadFile = File(...), principal=Depends(require_admin)):
    # one byte past the limit is enough to know it is too large
    content = file.file.read(user_service.max_avatar_bytes + 1)
    user_service.upload_avatar(user_id, file.filename, content, file.content_type)
    return MessageResponse(message="Avatar uploaded successfully")


@app.get(API_PREFIX + "/{user_id}/avatar")
def get_avatar(user_id: int):
    content, content_type = user_service.get_avatar(user_id)
    return Response(content=content, media_type=content_type)


@app.post(API_PREFIX + "/{user_id}/lock", response_model=MessageResponse)
def lock_user(
    user_id: int,
    lease: Optional[float] = Query(None, gt=0, description="Seconds until the lock lapses on its own"),
    principal=Depends(require_admin),
):
    user_service.lock(user_id, lease=lease or LOCK_LEASE_SECONDS or None)
    return MessageResponse(message="User locked successfully")


@app.post(API_PREFIX + "/{user_id}/unlock", response_model=MessageResponse)
def unlock_user(user_id: int, principal=Depends(require_admin)):
    if not user_service.unlock(user_id):
        return MessageResponse(message="User was not locked")
    return MessageResponse(message="User unlocked successfully")


@app.get(API_PREFIX + "/{user_id}/lock-status", response_model=LockStatusResponse)
def lock_status(user_id: int, principal=Depends(require_reader)):
    return LockStatusResponse(locked=user_service.is_locked(user_id))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "4015")), reload=False)
