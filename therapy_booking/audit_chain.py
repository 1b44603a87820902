# therapy_booking/audit_chain.py
import hashlib
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from . import errors, models, schemas
from .config import get_settings
from .database import SessionLocal

logger = logging.getLogger(__name__)

# One writer at a time within the process; the FOR UPDATE on the state row covers other processes
_append_lock = threading.Lock()

_UNSET = object()

HASHED_FIELDS = (
    "sequence", "timestamp", "action_type", "actor_id", "actor_role", "target_type",
    "target_id", "previous_value", "new_value", "details", "ip_address", "user_agent",
)


def _json_safe(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def _timestamp_text(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def serialize_entry(entry: Any) -> str:
    """Canonical JSON of the hashed fields of an entry (ORM row, schema or dict)."""
    payload = {}
    for field in HASHED_FIELDS:
        value = entry.get(field) if isinstance(entry, dict) else getattr(entry, field, None)
        if field == "timestamp" and isinstance(value, datetime):
            value = _timestamp_text(value)
        payload[field] = value
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def compute_hash(entry: Any, previous_hash: Optional[str], algorithm: str = None) -> str:
    algorithm = algorithm or get_settings().audit_hash_algorithm
    digest = hashlib.new(algorithm)
    digest.update(((previous_hash or "") + serialize_entry(entry)).encode("utf-8"))
    return digest.hexdigest()


class AuditChain:
    """Append-only, hash-linked audit log persisted in the audit_logs table.

    The chain tail lives in the singleton ``audit_chain_state`` row, which is
    read-modify-written under a process lock and a row lock, so concurrent
    appends never claim the same predecessor.
    """

    def __init__(self, session_factory=SessionLocal, algorithm: str = None):
        self.session_factory = session_factory
        self.algorithm = algorithm or get_settings().audit_hash_algorithm

    def append(
        self,
        action_type,
        actor_id: Optional[int] = None,
        actor_role: Optional[str] = None,
        target_type=None,
        target_id: Optional[int] = None,
        previous_value: Any = None,
        new_value: Any = None,
        details: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[schemas.AuditLogEntry]:
        """Store one entry at the chain tail.

        Persistence failures are logged and swallowed; the caller's business
        operation has already committed and is not rolled back. Returns the
        stored entry, or None when it could not be written.
        """
        # Coerce Enums to plain strings
        if hasattr(action_type, "value"):
            action_type = action_type.value
        if hasattr(target_type, "value"):
            target_type = target_type.value
        if hasattr(actor_role, "value"):
            actor_role = actor_role.value

        with _append_lock:
            db = self.session_factory()
            try:
                state = db.query(models.AuditChainState).filter(
                    models.AuditChainState.id == 1
                ).with_for_update().first()
                if state is None:
                    state = models.AuditChainState(id=1, tail_hash=None, sequence=0)
                    db.add(state)
                    db.flush()

                db_log = models.AuditLog(
                    sequence=state.sequence + 1,
                    timestamp=datetime.now(timezone.utc),
                    action_type=action_type,
                    actor_id=actor_id,
                    actor_role=actor_role,
                    target_type=target_type,
                    target_id=target_id,
                    previous_value=_json_safe(previous_value),
                    new_value=_json_safe(new_value),
                    details=details,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    previous_hash=state.tail_hash,
                )
                db_log.log_hash = compute_hash(db_log, state.tail_hash, self.algorithm)

                db.add(db_log)
                state.tail_hash = db_log.log_hash
                state.sequence = db_log.sequence
                db.commit()
                db.refresh(db_log)
                logger.debug(f"Audit entry {db_log.sequence} appended: {action_type} {target_type}:{target_id}")
                return schemas.AuditLogEntry.model_validate(db_log)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to append audit entry {action_type} for {target_type}:{target_id}: {e}")
                return None
            finally:
                db.close()

    def list_entries(
        self,
        target_type=None,
        target_id: Optional[int] = None,
        action_type=None,
    ) -> List[schemas.AuditLogEntry]:
        """Stored entries in chain order, optionally filtered."""
        db = self.session_factory()
        try:
            query = db.query(models.AuditLog)
            if target_type is not None:
                query = query.filter(models.AuditLog.target_type == getattr(target_type, "value", target_type))
            if target_id is not None:
                query = query.filter(models.AuditLog.target_id == target_id)
            if action_type is not None:
                query = query.filter(models.AuditLog.action_type == getattr(action_type, "value", action_type))
            return [schemas.AuditLogEntry.model_validate(row) for row in query.order_by(models.AuditLog.sequence).all()]
        finally:
            db.close()

    def verify(self, entries: Sequence[Any], anchor_hash: Any = _UNSET) -> schemas.ChainVerification:
        """Walk entries in order, checking each link and recomputing each hash.

        Entries may be stored rows, ``AuditLogEntry`` schemas or their dict form.

        Each entry's hash is recomputed from its own payload and the stored
        ``log_hash`` of the entry before it. The first entry is checked against
        ``anchor_hash`` when given, otherwise its own ``previous_hash`` is taken
        as the starting point.
        """
        entries = [schemas.parse_input(schemas.AuditLogEntry, entry) for entry in entries]
        results = []
        first_break = None
        for index, entry in enumerate(entries):
            if index == 0:
                expected_previous = entry.previous_hash if anchor_hash is _UNSET else anchor_hash
            else:
                expected_previous = entries[index - 1].log_hash

            reason = None
            if entry.previous_hash != expected_previous:
                reason = "previous_hash does not match the preceding entry"
            elif compute_hash(entry, expected_previous, self.algorithm) != entry.log_hash:
                reason = "log_hash does not match the entry contents"

            valid = reason is None
            if not valid and first_break is None:
                first_break = index
            results.append(schemas.EntryVerification(
                index=index,
                sequence=getattr(entry, "sequence", None),
                valid=valid,
                reason=reason,
            ))

        if first_break is not None:
            logger.warning(f"Audit chain verification failed at index {first_break}")
        return schemas.ChainVerification(
            valid=first_break is None,
            first_break_index=first_break,
            entries_checked=len(results),
            results=results,
        )

    def verify_stored(self) -> schemas.ChainVerification:
        """Verify the full persisted chain from its genesis entry."""
        return self.verify(self.list_entries(), anchor_hash=None)

    def verify_or_raise(self, entries: Optional[Iterable[Any]] = None) -> schemas.ChainVerification:
        result = self.verify(list(entries)) if entries is not None else self.verify_stored()
        if not result.valid:
            raise errors.IntegrityError(
                f"Audit chain broken at entry index {result.first_break_index}", verification=result
            )
        return result


# Singleton instance for global import
audit_chain = AuditChain()
