import functools
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional

import jwt
from fastapi import Request
from pydantic import BaseModel
from sqlmodel import Session, select
from werkzeug.security import check_password_hash, generate_password_hash

from .deps import settings
from .errors import Conflict, NotFound, Unauthorized, ValidationFailed
from .models import AppUser, Role, SalesAgent

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

DASHBOARDS = {
    Role.ADMIN: "/admin/dashboard",
    Role.USER: "/user/dashboard",
    Role.SALES_AGENT: "/sales-agent/dashboard",
}


class Permission(str, Enum):
    """Capabilities an admin can grant to a sales agent."""
    CONSOLE = "console"
    ORDERS = "orders"
    DASHBOARD = "dashboard"
    CUSTOMERS = "customers"
    IMPORT_INVOICE = "import-invoice"
    PACKING_LIST = "packing-list"


class SessionData(BaseModel):
    username: str
    role: str
    expires: datetime


# ---------- Tokens ----------
def create_session_token(username: str, role: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "username": username,
        "role": role,
        "iat": now,
        "exp": now + timedelta(minutes=settings.SESSION_TTL_MINUTES),
    }
    return jwt.encode(payload, settings.SESSION_SECRET, algorithm=ALGORITHM)


def read_session_token(token: Optional[str]) -> Optional[SessionData]:
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.SESSION_SECRET, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        logger.warning("rejected session token with bad signature or shape")
        return None
    if payload.get("role") not in DASHBOARDS or not payload.get("username"):
        return None
    return SessionData(
        username=payload["username"],
        role=payload["role"],
        expires=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


def get_current_session(request: Request) -> Optional[SessionData]:
    """Re-derived from the cookie on every request, never cached."""
    return read_session_token(request.cookies.get(settings.SESSION_COOKIE))


# ---------- Login ----------
@functools.lru_cache(maxsize=4)
def _admin_password_hash(password: str) -> str:
    return generate_password_hash(password)


def authenticate(db: Session, username: str, password: str) -> Optional[str]:
    """Return the role for these credentials, or None."""
    if username == settings.ADMIN_USERNAME:
        ok = check_password_hash(_admin_password_hash(settings.ADMIN_PASSWORD), password)
        return Role.ADMIN if ok else None

    user = db.exec(select(AppUser).where(AppUser.username == username)).first()
    if user:
        return Role.USER if user.check_password(password) else None

    agent = db.exec(select(SalesAgent).where(SalesAgent.username == username)).first()
    if agent and agent.check_password(password):
        return Role.SALES_AGENT

    return None


def ensure_username_free(db: Session, username: str,
                         user_id: Optional[int] = None, agent_id: Optional[int] = None) -> None:
    """Login names are shared by the admin, app users and sales agents."""
    taken = username == settings.ADMIN_USERNAME
    if not taken:
        q = select(AppUser.id).where(AppUser.username == username)
        if user_id is not None:
            q = q.where(AppUser.id != user_id)
        taken = db.exec(q).first() is not None
    if not taken:
        q = select(SalesAgent.id).where(SalesAgent.username == username)
        if agent_id is not None:
            q = q.where(SalesAgent.id != agent_id)
        taken = db.exec(q).first() is not None
    if taken:
        raise Conflict("Username already exists")


# ---------- Permission gate ----------
def parse_permissions(values: Iterable[str]) -> List[str]:
    out: List[str] = []
    for raw in values:
        v = (raw or "").strip()
        if not v:
            continue
        try:
            perm = Permission(v)
        except ValueError:
            raise ValidationFailed(f"Unknown permission: {v}")
        if perm.value not in out:
            out.append(perm.value)
    return out


def get_sales_agent(db: Session, username: str) -> Optional[SalesAgent]:
    return db.exec(select(SalesAgent).where(SalesAgent.username == username)).first()


def has_permission(db: Session, session: Optional[SessionData], permission: Permission) -> bool:
    if session is None:
        return False
    if session.role == Role.ADMIN:
        return True
    if session.role == Role.SALES_AGENT:
        agent = get_sales_agent(db, session.username)
        return bool(agent) and Permission(permission).value in (agent.permissions or [])
    return False


def require_role(session: Optional[SessionData], *roles: str) -> SessionData:
    if session is None or session.role not in roles:
        logger.warning(
            "refused %s (wanted %s)",
            session.username if session else "anonymous", ",".join(roles),
        )
        raise Unauthorized()
    return session


def require_permission(db: Session, session: Optional[SessionData], permission: Permission) -> SessionData:
    if not has_permission(db, session, permission):
        logger.warning(
            "refused %s without permission %s",
            session.username if session else "anonymous", Permission(permission).value,
        )
        raise Unauthorized()
    return session


def require_agent(db: Session, session: Optional[SessionData]) -> SalesAgent:
    """The sales agent behind a sales_agent session."""
    require_role(session, Role.SALES_AGENT)
    agent = get_sales_agent(db, session.username)
    if not agent:
        raise NotFound("Sales agent not found")
    return agent
