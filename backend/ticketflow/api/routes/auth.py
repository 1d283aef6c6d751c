"""
Authentication endpoints: registration, verification, login, logout and
password recovery.
"""

from fastapi import APIRouter, Depends, status

from ticketflow.api.deps import (
    get_bearer_token,
    get_client_info,
    get_credential_recovery,
    get_current_user,
    get_session_manager,
)
from ticketflow.models.user import User
from ticketflow.schemas.user import (
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    SessionInfo,
    UserResponse,
    VerifyEmailRequest,
)
from ticketflow.services.auth_service import ClientInfo, SessionManager
from ticketflow.services.recovery_service import CredentialRecovery

router = APIRouter(prefix="/auth", tags=["Authentication"])

RESET_REQUESTED_MESSAGE = "If an account exists for this email, a password reset link has been sent."


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(
    data: RegisterRequest,
    recovery: CredentialRecovery = Depends(get_credential_recovery),
):
    """Register a new account. A verification email is sent to the address."""
    return await recovery.register(
        email=data.email,
        password=data.password,
        confirm_password=data.confirm_password,
        first_name=data.first_name,
        last_name=data.last_name,
        date_of_birth=data.date_of_birth,
    )


@router.post("/verify-email", response_model=MessageResponse)
async def verify_email(
    data: VerifyEmailRequest,
    recovery: CredentialRecovery = Depends(get_credential_recovery),
):
    await recovery.verify_email(data.token)
    return MessageResponse(message="Email verified successfully")


@router.post("/resend-verification", response_model=MessageResponse)
async def resend_verification(
    data: ResendVerificationRequest,
    recovery: CredentialRecovery = Depends(get_credential_recovery),
):
    await recovery.resend_verification(data.email)
    return MessageResponse(message="If the account exists and is unverified, a new verification email has been sent.")


@router.post("/login", response_model=LoginResponse)
async def login(
    data: LoginRequest,
    sessions: SessionManager = Depends(get_session_manager),
    client: ClientInfo = Depends(get_client_info),
):
    """Authenticate and receive a bearer token. `remember_me` issues a long-lived token."""
    result = await sessions.login(data.email, data.password, client, data.remember_me)
    return LoginResponse(
        access_token=result.access_token,
        expires_in=result.expires_in,
        user=UserResponse.model_validate(result.user),
    )


@router.post("/logout", response_model=MessageResponse)
async def logout(
    token: str = Depends(get_bearer_token),
    sessions: SessionManager = Depends(get_session_manager),
):
    await sessions.logout(token)
    return MessageResponse(message="Logged out successfully")


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    data: ForgotPasswordRequest,
    recovery: CredentialRecovery = Depends(get_credential_recovery),
    client: ClientInfo = Depends(get_client_info),
):
    """Start a password reset. The response is the same whether or not the email is registered."""
    await recovery.initiate_password_reset(data.email, client)
    return MessageResponse(message=RESET_REQUESTED_MESSAGE)


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    data: ResetPasswordRequest,
    recovery: CredentialRecovery = Depends(get_credential_recovery),
):
    """Set a new password. Every existing session for the account is signed out."""
    await recovery.reset_password(data.token, data.new_password, data.confirm_password)
    return MessageResponse(message="Password has been reset successfully")


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)):
    return user


@router.get("/session", response_model=SessionInfo)
async def current_session(
    token: str = Depends(get_bearer_token),
    sessions: SessionManager = Depends(get_session_manager),
):
    return SessionInfo(**await sessions.describe_session(token))
