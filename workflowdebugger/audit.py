from sqlalchemy.orm import Session

from .models import AuditLog


def record(db: Session, action: str, entity_type: str, entity_id=None,
           user_id: int = None, details: dict = None, ip_address: str = None) -> AuditLog:
    """Append an audit row to the current transaction. The caller commits."""
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details,
        ip_address=ip_address,
    )
    db.add(entry)
    return entry
