import json
from typing import Optional


def write_audit(cur, actor: dict, action: str, entity_type: str, entity_id, details: Optional[dict] = None) -> None:
    # Runs on the caller's cursor so the audit row commits or rolls back with the change.
    cur.execute(
        """
        INSERT INTO audit_logs (id, actor_id, actor_role, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s::jsonb)
        """,
        (
            actor.get("actor_id"),
            actor.get("role"),
            action,
            entity_type,
            entity_id,
            json.dumps(details or {}, default=str),
        ),
    )
