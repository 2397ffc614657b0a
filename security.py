import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import pyotp
from jose import JWTError, jwt

import config

SECRET_KEY = config.JWT_SECRET
ALGORITHM = config.JWT_ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = config.JWT_EXPIRE_MINUTES

BCRYPT_ROUNDS = 12
TOTP_ISSUER = "USDC Wallet"


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


# --- 2FA (TOTP) ---

def generate_totp_secret() -> str:
    return pyotp.random_base32()


def totp_provisioning_uri(secret: str, email: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=TOTP_ISSUER)


def verify_totp(secret: str, code: str) -> bool:
    if not secret or not code:
        return False
    # two steps either side to tolerate clock drift on phones
    return pyotp.TOTP(secret).verify(code, valid_window=2)


# --- WaaS API credentials ---

def generate_api_credentials() -> tuple:
    api_key = "wk_" + secrets.token_hex(16)
    api_secret = secrets.token_hex(32)
    return api_key, api_secret


def generate_webhook_secret() -> str:
    return "whsec_" + secrets.token_hex(24)
