"""
AUDIT TRAIL - Session-keyed event log for dispute resolution

Writes are FIRE-AND-FORGET: a failed audit write is logged and dropped,
never raised into the gameplay path.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from .models import AuditEvent
from .outcome import StorageError
from .storage import Clock, FraudStore

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    GAME_START = "GAME_START"
    ANSWER_GIVEN = "ANSWER_GIVEN"
    TIMEOUT = "TIMEOUT"
    GAME_END = "GAME_END"
    CAPTCHA_SHOWN = "CAPTCHA_SHOWN"
    CAPTCHA_PASSED = "CAPTCHA_PASSED"
    CAPTCHA_FAILED = "CAPTCHA_FAILED"
    CAPTCHA_TIMEOUT = "CAPTCHA_TIMEOUT"
    Q1_TIMEOUT = "Q1_TIMEOUT"
    FAST_RESPONSE = "FAST_RESPONSE"
    SESSION_FLAGGED = "SESSION_FLAGGED"
    FRAUD_FLAG = "FRAUD_FLAG"


class AuditTrail:

    def __init__(self, store: FraudStore, clock: Clock = datetime.now):
        self.store = store
        self.clock = clock

    def log_event(self, session_id: Optional[str], user_id: str,
                  event_type: AuditEventType, data: Optional[Dict] = None) -> bool:
        try:
            self.store.append_audit(AuditEvent(
                session_id=session_id,
                user_id=user_id,
                event_type=AuditEventType(event_type).value,
                event_data=dict(data or {}),
                created_at=self.clock(),
            ))
            return True
        except StorageError as e:
            logger.error(f"Audit write dropped ({event_type}) for session {session_id}: {e}")
            return False

    def session_trail(self, session_id: str) -> List[AuditEvent]:
        try:
            return sorted(self.store.audit_events(session_id=session_id), key=lambda e: e.created_at)
        except StorageError as e:
            logger.error(f"Error reading audit trail for session {session_id}: {e}")
            return []

    def user_trail(self, user_id: str, start: Optional[datetime] = None,
                   end: Optional[datetime] = None) -> List[AuditEvent]:
        try:
            events = self.store.audit_events(user_id=user_id)
        except StorageError as e:
            logger.error(f"Error reading audit trail for user {user_id}: {e}")
            return []
        return sorted(
            (e for e in events
             if (start is None or e.created_at >= start) and (end is None or e.created_at <= end)),
            key=lambda e: e.created_at,
        )

    def session_report(self, session_id: str) -> Optional[Dict]:
        """Summarise one session's trail for a dispute reviewer."""
        events = self.session_trail(session_id)
        if not events:
            return None

        counts = Counter(e.event_type for e in events)
        captcha = {
            "shown": counts.get(AuditEventType.CAPTCHA_SHOWN.value, 0),
            "passed": counts.get(AuditEventType.CAPTCHA_PASSED.value, 0),
            "failed": counts.get(AuditEventType.CAPTCHA_FAILED.value, 0),
            "timed_out": counts.get(AuditEventType.CAPTCHA_TIMEOUT.value, 0),
        }
        response_times = [
            e.event_data["response_time_ms"] for e in events
            if e.event_type == AuditEventType.ANSWER_GIVEN.value
            and e.event_data.get("response_time_ms") is not None
        ]
        return {
            "session_id": session_id,
            "user_id": events[0].user_id,
            "started_at": events[0].created_at.isoformat(),
            "ended_at": events[-1].created_at.isoformat(),
            "duration_seconds": int((events[-1].created_at - events[0].created_at).total_seconds()),
            "event_counts": dict(counts),
            "captcha": captcha,
            "timeouts": counts.get(AuditEventType.TIMEOUT.value, 0),
            "answers": len(response_times),
            "avg_response_time_ms": round(sum(response_times) / len(response_times)) if response_times else None,
            "flagged": counts.get(AuditEventType.SESSION_FLAGGED.value, 0) > 0,
        }

    def cleanup(self, retention_days: int = 7) -> int:
        try:
            removed = self.store.purge_audit_before(self.clock() - timedelta(days=retention_days))
        except StorageError as e:
            logger.error(f"Audit cleanup skipped: {e}")
            return 0
        if removed:
            logger.info(f"🧹 Removed {removed} audit events older than {retention_days} days")
        return removed
