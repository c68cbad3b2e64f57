from fastapi import Header, HTTPException, Depends
from typing import Optional
import uuid


ACTOR_ROLES = {"farmer", "reviewer", "association", "buyer"}


def _parse_actor_id(raw: Optional[str]) -> str:
    value = (raw or "").strip()
    if not value:
        raise HTTPException(status_code=401, detail="missing actor id")
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise HTTPException(status_code=401, detail="actor id must be a valid UUID")


def get_actor(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    x_actor_role: Optional[str] = Header(None, alias="X-Actor-Role"),
):
    # Identity is verified upstream by the authentication layer; the ledger
    # trusts the forwarded id and role.
    actor_id = _parse_actor_id(x_actor_id)
    role = (x_actor_role or "").strip().lower()
    if role not in ACTOR_ROLES:
        raise HTTPException(status_code=401, detail="missing or unknown actor role")
    return {"actor_id": actor_id, "role": role}


def require_role(*roles: str):
    allowed = set(roles)

    def _dep(actor=Depends(get_actor)):
        if actor["role"] not in allowed:
            raise HTTPException(status_code=403, detail="permission denied")
        return actor
    return _dep


def is_staff(actor: dict) -> bool:
    return actor.get("role") in {"reviewer", "association"}
