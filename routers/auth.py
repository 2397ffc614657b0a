import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

import crud
import models
import schemas
import security
from database import get_db
from deps import dump, get_current_user, get_tenant, ok
from errors import AuthenticationError, ConflictError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


def issue_token(user: models.User, tenant: Optional[models.WhiteLabelClient]) -> dict:
    access_token = security.create_access_token(data={
        "sub": str(user.id),
        "email": user.email,
        "whitelabel_client_id": tenant.id if tenant else None,
    })
    return schemas.Token(access_token=access_token, user=schemas.User.model_validate(user)).model_dump(mode="json")


@router.post("/register", status_code=status.HTTP_201_CREATED, summary="Register a new user")
def register(user: schemas.UserCreate, db: Session = Depends(get_db),
             tenant: Optional[models.WhiteLabelClient] = Depends(get_tenant)):
    if crud.get_user_by_email(db, email=user.email):
        raise ConflictError("User already exists with this email")
    db_user = crud.create_user(db=db, user=user)
    logger.info("User registered: %s", db_user.email)
    return ok(issue_token(db_user, tenant), message="User registered successfully")


@router.post("/login", summary="Log in, with a TOTP code when 2FA is enabled")
def login(request: schemas.LoginRequest, db: Session = Depends(get_db),
          tenant: Optional[models.WhiteLabelClient] = Depends(get_tenant)):
    user = crud.get_user_by_email(db, email=request.email)
    if not user or not security.verify_password(request.password, user.password_hash):
        raise AuthenticationError("Invalid credentials")
    if user.status != "active":
        raise AuthenticationError("Account is suspended or inactive")

    if user.two_factor_enabled:
        if not request.two_factor_code:
            return {"success": True, "requires_two_factor": True, "message": "2FA code required"}
        if not security.verify_totp(user.two_factor_secret, request.two_factor_code):
            raise AuthenticationError("Invalid 2FA code")

    crud.touch_last_login(db, user)
    logger.info("User logged in: %s", user.email)
    return ok(issue_token(user, tenant), message="Login successful")


@router.post("/setup-2fa", summary="Generate a TOTP secret (enabled after verification)")
def setup_two_factor(current_user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    secret = security.generate_totp_secret()
    current_user.two_factor_secret = secret
    db.commit()
    return ok({
        "secret": secret,
        "otpauth_url": security.totp_provisioning_uri(secret, current_user.email),
        "manual_entry_key": secret,
    })


@router.post("/verify-2fa", summary="Verify a TOTP code and enable 2FA")
def verify_two_factor(request: schemas.TwoFactorVerify, current_user: models.User = Depends(get_current_user),
                      db: Session = Depends(get_db)):
    if not current_user.two_factor_secret:
        raise ValidationError("2FA not set up")
    if not security.verify_totp(current_user.two_factor_secret, request.token):
        raise ValidationError("Invalid 2FA token", details=[{"field": "token", "message": "code rejected"}])

    current_user.two_factor_enabled = True
    db.commit()
    logger.info("2FA enabled for user: %s", current_user.email)
    return ok(message="2FA enabled successfully")


@router.get("/me", summary="Current user")
def read_users_me(current_user: models.User = Depends(get_current_user)):
    return ok(dump(schemas.User, current_user))
