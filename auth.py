"""
Identity & Access.

Credentials are HS256 JWTs carrying the user id (``sub``) and role. Each
protected handler resolves the token into an ``Actor`` and receives it as an
argument; nothing about the caller is kept in module state.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import BCRYPT_ROUNDS, JWT_ALGORITHM, JWT_EXPIRE_MINUTES, JWT_SECRET
from database import USERS, create_document, get_db, get_documents, parse_id, utcnow
from errors import Conflict, DuplicateEntry, Forbidden, NotFound, Unauthorized
from schemas import Role, User

log = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role
    name: str = ""
    email: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(user_id: str, role: Role, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=JWT_EXPIRE_MINUTES))
    to_encode = {"sub": user_id, "role": Role(role).value, "exp": expire}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except JWTError:
        raise Unauthorized("Could not validate credentials")
    if not payload.get("sub"):
        raise Unauthorized("Could not validate credentials")
    return payload


async def get_current_actor(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)) -> Actor:
    if not token:
        raise Unauthorized("Not authorized, no token")
    payload = decode_access_token(token)
    try:
        user_id = parse_id(payload["sub"], "User")
    except NotFound:
        raise Unauthorized("Could not validate credentials")
    user = await db[USERS].find_one({"_id": user_id})
    if not user:
        raise Unauthorized("User no longer exists")
    # The stored role wins over the one in the token, so demotions apply at once
    return Actor(id=str(user["_id"]), role=Role(user["role"]), name=user.get("name", ""), email=user.get("email", ""))


def require_roles(*roles: Role):
    """Dependency factory: the caller's role must be one of ``roles``."""
    allowed = frozenset(roles)

    async def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in allowed:
            names = ", ".join(sorted(r.value for r in allowed))
            raise Forbidden(f"Role '{actor.role.value}' is not authorized to access this route (allowed: {names})")
        return actor

    return dependency


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user["name"],
        "email": user["email"],
        "role": user["role"],
        "isVerified": user.get("isVerified", False),
    }


async def register_user(db, name: str, email: str, password: str, role: Role = Role.customer) -> dict:
    """Self-service registration. Never creates an admin."""
    if role == Role.admin:
        raise Forbidden("Admin accounts can only be created by existing admins")
    return await _create_user(db, name, email, password, role)


async def create_admin_user(db, actor: Actor, name: str, email: str, password: str) -> dict:
    if not actor.is_admin:
        raise Forbidden("Only admins can create admin accounts")
    user = await _create_user(db, name, email, password, Role.admin, verified=True)
    log.info("user.admin_created", user_id=str(user["_id"]), created_by=actor.id)
    return user


async def change_user_role(db, actor: Actor, user_id, role: Role) -> dict:
    """Move another user to ``role``. Admins cannot change their own role."""
    if not actor.is_admin:
        raise Forbidden("Only admins can change user roles")
    uid = parse_id(user_id, "User")
    if str(uid) == actor.id:
        raise Conflict("You cannot change your own role")
    user = await db[USERS].find_one_and_update(
        {"_id": uid},
        {"$set": {"role": role.value, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise NotFound("User not found")
    log.info("user.role_changed", user_id=str(uid), role=role.value, by=actor.id)
    return user


async def list_users(db, role: Optional[Role] = None, page: int = 1, limit: int = 50) -> dict:
    query = {"role": role.value} if role else {}
    total = await db[USERS].count_documents(query)
    users = await get_documents(db, USERS, query, sort=[("createdAt", -1)], skip=(page - 1) * limit, limit=limit)
    return {"count": len(users), "total": total, "page": page, "users": [public_user(u) for u in users]}


async def authenticate(db, email: str, password: str) -> dict:
    user = await db[USERS].find_one({"email": email.lower()})
    if not user or not verify_password(password, user["passwordHash"]):
        raise Unauthorized("Invalid credentials")
    return user


async def bootstrap_admin(db, name: str, email: str, password: str) -> Optional[dict]:
    """Create the first admin from configuration when the platform has none."""
    if await db[USERS].find_one({"role": Role.admin.value}):
        return None
    if await db[USERS].find_one({"email": email.lower()}):
        log.warning("user.bootstrap_admin_skipped", email=email, reason="email taken")
        return None
    user = await _create_user(db, name, email, password, Role.admin, verified=True)
    log.info("user.bootstrap_admin_created", user_id=str(user["_id"]))
    return user


async def _create_user(db, name: str, email: str, password: str, role: Role, verified: bool = False) -> dict:
    email = email.lower()
    if await db[USERS].find_one({"email": email}):
        raise DuplicateEntry("User already exists")
    user = User(name=name, email=email, passwordHash=get_password_hash(password), role=role, isVerified=verified)
    try:
        user_id = await create_document(db, USERS, user)
    except DuplicateKeyError:
        # lost a race with a concurrent registration for the same email
        raise DuplicateEntry("User already exists")
    return await db[USERS].find_one({"_id": user_id})
