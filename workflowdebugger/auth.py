import datetime as dt
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, field_validator

from . import audit, mailer, payments
from .db import get_db
from .deps import create_access_token, get_current_user
from .errors import ApiError
from .models import AuditLog, Subscription, User, UserSettings, VerificationToken, Workflow, utcnow, as_utc
from .rate_limit import get_client_ip, rate_limit

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt_sha256", "bcrypt"], default="pbkdf2_sha256", deprecated="auto")

router = APIRouter(prefix="/auth", tags=["auth"])

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
RESET_TOKEN_TTL = dt.timedelta(hours=1)
DELETE_CONFIRMATION = "DELETE MY ACCOUNT"
RESET_REQUESTED_MESSAGE = "If an account exists with that email, a reset link has been sent."


def _check_password(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError("Password too long")
    return value


class RegisterIn(BaseModel):
    email: EmailStr
    password: str
    name: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def clean_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("password")
    @classmethod
    def password_length(cls, v):
        return _check_password(v)

    @field_validator("name")
    @classmethod
    def name_length(cls, v):
        if v is None:
            return v
        v = v.strip()
        if len(v) > 100:
            raise ValueError("Invalid name")
        return v or None


class ResetRequestIn(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def clean_email(cls, v):
        v = v.strip().lower()
        if not v:
            raise ValueError("Email is required")
        return v


class ResetConfirmIn(BaseModel):
    token: str
    password: str

    @field_validator("token")
    @classmethod
    def token_present(cls, v):
        if not v:
            raise ValueError("Reset token is required")
        return v

    @field_validator("password")
    @classmethod
    def password_length(cls, v):
        return _check_password(v)


class DeleteAccountIn(BaseModel):
    confirm: Optional[str] = None


@router.post(
    "/register",
    status_code=201,
    dependencies=[Depends(rate_limit("signup", limit=5, window=15 * 60,
                                     message="Too many signup attempts. Please try again later."))],
)
def register(payload: RegisterIn, request: Request, db: Session = Depends(get_db)):
    if db.query(User.id).filter(User.email == payload.email).first():
        raise ApiError.bad_request("An account with this email already exists")

    user = User(email=payload.email, name=payload.name, password_hash=pwd_context.hash(payload.password))
    db.add(user)
    db.flush()
    audit.record(db, "user.signup", "user", user.id, user_id=user.id, ip_address=get_client_ip(request))
    db.commit()
    db.refresh(user)
    logger.info("User signed up", extra={"user_id": user.id})

    mailer.best_effort(mailer.send_welcome_email, user.email, user.name, label="Welcome email")
    return {"user": {"id": user.id, "email": user.email, "name": user.name}}


@router.post("/login")
def login(form: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == form.username.strip().lower()).first()
    if not user or not pwd_context.verify(form.password, user.password_hash):
        raise ApiError.unauthorized("Invalid credentials")
    return {"access_token": create_access_token(user), "token_type": "bearer"}


@router.post(
    "/reset-password",
    dependencies=[Depends(rate_limit("reset", limit=3, window=15 * 60))],
)
def request_password_reset(payload: ResetRequestIn, request: Request, db: Session = Depends(get_db)):
    # Same answer whether or not the account exists.
    user = db.query(User).filter(User.email == payload.email).first()
    if not user:
        return {"message": RESET_REQUESTED_MESSAGE}

    token = secrets.token_urlsafe(32)
    db.add(VerificationToken(identifier=user.email, token=token, expires=utcnow() + RESET_TOKEN_TTL))
    audit.record(db, "user.password_reset_requested", "user", user.id, user_id=user.id,
                 ip_address=get_client_ip(request))
    db.commit()

    mailer.best_effort(mailer.send_password_reset_email, user.email, token, label="Password reset email")
    return {"message": RESET_REQUESTED_MESSAGE}


@router.post(
    "/reset-password/confirm",
    dependencies=[Depends(rate_limit("reset-confirm", limit=5, window=15 * 60,
                                     message="Too many attempts. Please try again later."))],
)
def confirm_password_reset(payload: ResetConfirmIn, request: Request, db: Session = Depends(get_db)):
    record = db.query(VerificationToken).filter(VerificationToken.token == payload.token).first()
    if record is None or as_utc(record.expires) <= utcnow():
        raise ApiError.bad_request("Invalid or expired reset link. Please request a new one.")

    user = db.query(User).filter(User.email == record.identifier).first()
    if user is None:
        raise ApiError.bad_request("Invalid or expired reset link. Please request a new one.")

    user.password_hash = pwd_context.hash(payload.password)
    user.updated_at = utcnow()
    db.query(VerificationToken).filter(VerificationToken.identifier == record.identifier).delete(
        synchronize_session=False
    )
    audit.record(db, "user.password_reset", "user", user.id, user_id=user.id, ip_address=get_client_ip(request))
    db.commit()
    return {"message": "Password updated successfully. You can now log in."}


@router.delete("/account")
def delete_account(request: Request, payload: Optional[DeleteAccountIn] = None,
                   db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    if payload is None or payload.confirm != DELETE_CONFIRMATION:
        raise ApiError.bad_request(f'Please confirm by sending {{ "confirm": "{DELETE_CONFIRMATION}" }}')

    user_id = user.id
    sub = (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc())
        .first()
    )
    if sub is not None and sub.status == "active":
        try:
            payments.cancel_subscription(sub.id)
        except Exception as exc:
            # Local deletion proceeds even when Stripe is unreachable.
            logger.warning("Stripe cancel failed during account deletion", extra={"user_id": user_id, "error": str(exc)})

    db.query(Subscription).filter(Subscription.user_id == user_id).delete(synchronize_session=False)
    db.query(Workflow).filter(Workflow.user_id == user_id).delete(synchronize_session=False)
    db.query(UserSettings).filter(UserSettings.user_id == user_id).delete(synchronize_session=False)
    db.query(VerificationToken).filter(VerificationToken.identifier == user.email).delete(synchronize_session=False)
    db.query(AuditLog).filter(AuditLog.user_id == user_id).update(
        {AuditLog.user_id: None}, synchronize_session=False
    )
    audit.record(db, "user.deleted", "user", user_id, ip_address=get_client_ip(request))
    db.delete(user)
    db.commit()
    logger.info("Account deleted", extra={"user_id": user_id})
    return {"message": "Account deleted successfully"}
