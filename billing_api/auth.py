from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request

from .settings import settings


@dataclass(frozen=True)
class Actor:
    user_id: Optional[int]
    role: str


def issue_token(user_id: int, role: str, secret: Optional[str] = None) -> str:
    return jwt.encode({"userId": user_id, "role": role}, secret or settings.jwt_secret,
                      algorithm=settings.jwt_algorithm)


def get_actor(request: Request) -> Actor:
    header = request.headers.get("authorization", "")
    if not header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Access denied. No token provided or invalid format. Use Bearer <token>")
    token = header.split(" ", 1)[1].strip()
    secret = getattr(request.app.state, "jwt_secret", None) or settings.jwt_secret
    try:
        claims = jwt.decode(token, secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    return Actor(user_id=claims.get("userId"), role=claims.get("role") or "user")


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role != "admin":
        raise HTTPException(status_code=403, detail="Access denied. Insufficient permissions")
    return actor
