import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext
from pymongo.database import Database

from .config import Config
from .database import create_document, get_db, to_object_id
from .schemas import Profile

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(subject: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = subject.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=Config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, Config.JWT_SECRET, algorithm=Config.JWT_ALG)


def token_for(profile: Dict[str, Any]) -> str:
    return create_access_token({"sub": str(profile["_id"]), "role": profile.get("role", "user")})


def _resolve_user(token: str, db: Database) -> Dict[str, Any]:
    # Every failure mode is reported as the same 401
    try:
        payload = jwt.decode(token, Config.JWT_SECRET, algorithms=[Config.JWT_ALG])
        uid = to_object_id(payload.get("sub"))
        user = db["profile"].find_one({"_id": uid}) if uid else None
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid authentication")
    if not user:
        raise HTTPException(status_code=401, detail="Invalid authentication")
    return user


async def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return _resolve_user(token, db)


async def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme), db: Database = Depends(get_db)) -> Optional[Dict[str, Any]]:
    if not token:
        return None
    return _resolve_user(token, db)


async def get_current_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def seed_admin(db: Database) -> bool:
    """Create the configured admin profile once. Returns True if one was created."""
    email, password = Config.ADMIN_EMAIL, Config.ADMIN_PASSWORD
    if not email or not password:
        return False
    if db["profile"].find_one({"email": email}):
        return False
    admin = Profile(
        email=email,
        full_name="Administrator",
        role="admin",
        password_hash=hash_password(password),
    )
    create_document(db, "profile", admin.model_dump())
    logger.info("Admin user seeded: %s", email)
    return True
