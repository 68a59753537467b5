"""
Audit logging service.
Append-only audit log of request workflow transitions with integrity hashing.
"""
import hashlib
import json
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AuditLog, utcnow


def compute_integrity_hash(
    entity_type: str,
    entity_id,
    action: str,
    actor_id,
    source: Optional[str],
    timestamp_utc,
    changes: Optional[Dict],
    context: Optional[Dict],
    secret: str,
) -> str:
    canonical_data = {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "actor_id": str(actor_id) if actor_id else None,
        "source": source,
        "timestamp_utc": timestamp_utc.isoformat(),
        "changes": changes,
        "context": context,
    }
    # Drop None values and sort keys so the digest is stable
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def record_transition(
    db: Session,
    entity_type: str,
    entity_id,
    action: str,
    actor_id=None,
    source: Optional[str] = None,
    changes: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Add an audit entry to the current transaction.

    Args:
        entity_type: item_request|office_request
        action: CREATE|SUBMIT|APPROVE|REJECT|COMPLETE
        changes: {field: {"before": ..., "after": ...}}
        integrity_secret: Secret for the integrity hash (defaults to JWT_SECRET)

    The entry is flushed, not committed, so it lands atomically with the
    transition it describes.
    """
    timestamp_utc = utcnow()
    secret = settings.jwt_secret if integrity_secret is None else integrity_secret
    source = source or "api"
    changes = _jsonable(changes)
    context = _jsonable(context)

    integrity_hash = None
    if secret:
        integrity_hash = compute_integrity_hash(
            entity_type, entity_id, action, actor_id, source, timestamp_utc, changes, context, secret
        )

    entry = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        source=source,
        changes_json=changes,
        timestamp_utc=timestamp_utc,
        context=context,
        integrity_hash=integrity_hash,
    )
    db.add(entry)
    db.flush()
    return entry


def verify_integrity(entry: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    secret = settings.jwt_secret if integrity_secret is None else integrity_secret
    if not entry.integrity_hash or not secret:
        return False
    expected = compute_integrity_hash(
        entry.entity_type,
        entry.entity_id,
        entry.action,
        entry.actor_id,
        entry.source,
        entry.timestamp_utc,
        entry.changes_json,
        entry.context,
        secret,
    )
    return expected == entry.integrity_hash


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id=None,
    limit: int = 100,
    offset: int = 0,
) -> List[AuditLog]:
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)
    return query.order_by(AuditLog.timestamp_utc.asc()).limit(limit).offset(offset).all()


def _jsonable(value: Optional[Dict]) -> Optional[Dict]:
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))
