"""Auth router for account registration and login.

Endpoints:
    POST /auth/register  - Create an account and return a bearer token
    POST /auth/login     - Exchange username/phone + password for a token

The token is presented as ``?token=...`` when opening the chat WebSocket.
"""
import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from relaychat.config import get_config
from relaychat.storage import ChatStore, RegistrationConflict, UserRecord

from .service import get_credential_service, hash_password, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    """Request body for registration."""
    username: str = ""
    phoneNumber: str = ""
    password: str = ""


class LoginRequest(BaseModel):
    """Request body for login. ``username`` also accepts a phone number."""
    username: str = ""
    password: str = ""


class PublicUser(BaseModel):
    id: int
    username: str
    phoneNumber: str


class AuthResponse(BaseModel):
    message: str
    token: str
    user: PublicUser = Field(..., description="The authenticated account")


def _public(user: UserRecord) -> PublicUser:
    return PublicUser(id=user.id, username=user.username, phoneNumber=user.phoneNumber)


@router.post("/register", response_model=AuthResponse)
async def register(request: RegisterRequest) -> AuthResponse:
    """Create a new account.

    Returns 400 when a field is missing, the password is too short, or the
    username / phone number is already registered.
    """
    if not request.username or not request.phoneNumber or not request.password:
        raise HTTPException(status_code=400, detail="All fields are required")

    min_length = get_config().auth.min_password_length
    if len(request.password) < min_length:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {min_length} characters",
        )

    store = ChatStore.get_instance()
    existing = await store.find_user_by_username_or_phone(
        request.username, request.phoneNumber
    )
    if existing is not None:
        raise HTTPException(status_code=400, detail="Username or phone number already exists")

    try:
        user = await store.create_user(
            request.username, request.phoneNumber, hash_password(request.password)
        )
    except RegistrationConflict as e:
        raise HTTPException(status_code=400, detail=str(e))

    token = get_credential_service().issue_token(user.id, user.username)
    logger.info(f"[Auth] Registered userId={user.id} ({user.username})")
    return AuthResponse(
        message="User registered successfully",
        token=token,
        user=_public(user),
    )


@router.post("/login", response_model=AuthResponse)
async def login(request: LoginRequest) -> AuthResponse:
    """Authenticate by username or phone number."""
    if not request.username or not request.password:
        raise HTTPException(status_code=400, detail="Username and password are required")

    store = ChatStore.get_instance()
    user = await store.find_user_by_username_or_phone(request.username)
    if user is None or not verify_password(request.password, user.passwordHash):
        logger.info(f"[Auth] Failed login for {request.username!r}")
        raise HTTPException(status_code=401, detail="Invalid credentials")

    await store.touch_last_login(user.id)
    token = get_credential_service().issue_token(user.id, user.username)
    return AuthResponse(message="Login successful", token=token, user=_public(user))
