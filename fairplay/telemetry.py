"""
SESSION TELEMETRY - Per-question response latency for one game session

Ephemeral keyspace layout (all keys expire on their own):
- question_start:<session>:q<n>   start marker          60s
- response_times:<session>        response buffer       1h
- fast_responses:<user>           fast-answer counter   24h window
- games_per_hour:<user>           game rate counter     1h window

Everything here is BEST-EFFORT. A failed write is logged and treated as
absent signal; question delivery never waits on telemetry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from .alerts import AlertBook
from .audit import AuditEventType, AuditTrail
from .config import TelemetryThresholds
from .models import GameSessionRecord, SessionEvidence, SessionSummary, Severity
from .outcome import Ok, Outcome, Skipped, StorageError, best_effort
from .storage import Clock, ExpiringStore, FraudStore

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    count: int = 0
    limit: int = 0
    message: Optional[str] = None


@dataclass
class PerfectGameCheck:
    suspicious: bool
    count: int = 0
    limit: int = 0


class SessionTelemetryRecorder:

    def __init__(
        self,
        thresholds: TelemetryThresholds,
        ephemeral: ExpiringStore,
        store: FraudStore,
        alerts: AlertBook,
        audit: AuditTrail,
        clock: Clock = datetime.now,
    ):
        self.thresholds = thresholds
        self.ephemeral = ephemeral
        self.store = store
        self.alerts = alerts
        self.audit = audit
        self.clock = clock

    @staticmethod
    def _start_key(session_id: str, question_number: int) -> str:
        return f"question_start:{session_id}:q{question_number}"

    @staticmethod
    def _buffer_key(session_id: str) -> str:
        return f"response_times:{session_id}"

    # ------------------------------------------------------------------
    # Question start markers
    # ------------------------------------------------------------------

    def record_question_start(self, session_id: str, question_number: int) -> Outcome:
        return best_effort(
            "question start marker",
            self.ephemeral.set,
            self._start_key(session_id, question_number),
            self.clock().timestamp(),
            self.thresholds.question_start_ttl,
        )

    def question_start_time(self, session_id: str, question_number: int) -> Optional[datetime]:
        outcome = best_effort("question start lookup", self.ephemeral.get,
                              self._start_key(session_id, question_number))
        if not outcome.ok or outcome.value is None:
            return None
        return datetime.fromtimestamp(outcome.value)

    def elapsed_ms(self, session_id: str, question_number: int) -> Optional[int]:
        """Response time measured from the stored start marker, if any."""
        started = self.question_start_time(session_id, question_number)
        if started is None:
            return None
        return max(0, int((self.clock() - started).total_seconds() * 1000))

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------

    def record_answer(self, session_id: str, user_id: str, question_number: int,
                      response_time_ms: int) -> Outcome:
        """Append to the session buffer; count sub-floor answers per user."""
        key = self._buffer_key(session_id)
        try:
            times: List[Dict] = list(self.ephemeral.get(key) or [])
            times.append({
                "question": question_number,
                "time": int(response_time_ms),
                "timestamp": self.clock().isoformat(),
            })
            self.ephemeral.set(key, times, self.thresholds.response_buffer_ttl)
        except StorageError as e:
            logger.error(f"Error tracking response time for session {session_id}: {e}")
            return Skipped(reason=f"response buffer: {e}")

        if response_time_ms < self.thresholds.min_response_ms:
            self._flag_fast_response(user_id, session_id, question_number, response_time_ms)

        return Ok(times)

    def _flag_fast_response(self, user_id: str, session_id: str, question_number: int,
                            response_time_ms: int):
        key = f"fast_responses:{user_id}"
        try:
            count = self.ephemeral.incr(key)
            if count == 1:
                self.ephemeral.expire(key, self.thresholds.fast_counter_ttl)
        except StorageError as e:
            logger.error(f"Error counting fast response for user {user_id}: {e}")
            return

        logger.warning(
            f"⚡ Fast response: user {user_id}, session {session_id}, "
            f"Q{question_number}, {response_time_ms}ms (24h count {count})"
        )
        self.audit.log_event(session_id, user_id, AuditEventType.FAST_RESPONSE, {
            "question_number": question_number,
            "response_time_ms": response_time_ms,
            "count_24h": count,
        })

        if count >= self.thresholds.suspicious_fast_count:
            self.alerts.flag_for_review(user_id, "Multiple fast responses detected", session_id)

    def response_times(self, session_id: str) -> List[int]:
        outcome = best_effort("response buffer read", self.ephemeral.get, self._buffer_key(session_id))
        if not outcome.ok or not outcome.value:
            return []
        return [t["time"] for t in outcome.value]

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def finalize_session(self, session_id: str, user_id: str) -> Optional[SessionSummary]:
        """
        Summarise the buffer into the durable session row.

        Returns None when there is nothing to finalize (already finalized,
        expired, or the keyspace is unreachable).
        """
        key = self._buffer_key(session_id)
        try:
            times = self.ephemeral.get(key)
        except StorageError as e:
            logger.error(f"Error finalizing session {session_id}: {e}")
            return None
        if not times:
            return None

        response_times = [t["time"] for t in times]
        avg_time = round(sum(response_times) / len(response_times))
        fastest = min(response_times)
        fast_answers = sum(1 for t in response_times if t < self.thresholds.min_response_ms)
        is_suspicious = (
            avg_time < self.thresholds.suspicious_avg_ms
            or fast_answers >= self.thresholds.suspicious_fast_count
        )
        summary = SessionSummary(
            avg_response_ms=avg_time,
            fastest_response_ms=fastest,
            total_questions=len(times),
            fast_answers=fast_answers,
            is_suspicious=is_suspicious,
        )

        persisted = best_effort("session summary", self._persist_summary,
                                session_id, user_id, summary, times)
        if not persisted.ok:
            # Leave the buffer in place so a later retry can still finalize.
            return summary

        best_effort("response buffer cleanup", self.ephemeral.delete, key)

        if is_suspicious:
            self._escalate_suspicious_session(session_id, user_id, summary)

        return summary

    def _persist_summary(self, session_id: str, user_id: str, summary: SessionSummary,
                         times: List[Dict]):
        record = self.store.get_session(session_id)
        if record is None:
            record = GameSessionRecord(
                session_id=session_id,
                user_id=user_id,
                started_at=datetime.fromisoformat(times[0]["timestamp"]),
            )
        record.avg_response_time_ms = summary.avg_response_ms
        record.fastest_response_ms = summary.fastest_response_ms
        record.suspicious = record.suspicious or summary.is_suspicious
        record.response_times = list(times)
        self.store.save_session(record)

    def _escalate_suspicious_session(self, session_id: str, user_id: str, summary: SessionSummary):
        reason = (f"Suspicious game session: avg {summary.avg_response_ms}ms, "
                  f"{summary.fast_answers} fast answers")
        self.audit.log_event(session_id, user_id, AuditEventType.SESSION_FLAGGED, {
            "avg_response_ms": summary.avg_response_ms,
            "fast_answers": summary.fast_answers,
        })
        self.alerts.flag_for_review(user_id, reason, session_id)
        severity = (Severity.HIGH if summary.avg_response_ms < self.thresholds.min_response_ms
                    else Severity.MEDIUM)
        self.alerts.raise_alert(
            user_id, "suspicious_session", severity, reason,
            [SessionEvidence(
                session_id=session_id,
                avg_response_ms=summary.avg_response_ms,
                fastest_response_ms=summary.fastest_response_ms,
                fast_answers=summary.fast_answers,
            )],
        )

    # ------------------------------------------------------------------
    # Rate limits
    # ------------------------------------------------------------------

    def check_game_rate_limit(self, user_id: str) -> RateLimitResult:
        key = f"games_per_hour:{user_id}"
        limit = self.thresholds.max_games_per_hour
        try:
            count = self.ephemeral.incr(key)
            if count == 1:
                self.ephemeral.expire(key, 3600)
        except StorageError as e:
            logger.error(f"Error checking game rate limit for user {user_id}: {e}")
            return RateLimitResult(allowed=True)

        if count > limit:
            return RateLimitResult(
                allowed=False, count=count, limit=limit,
                message=(f"⚠️ *SLOW DOWN* ⚠️\n\nYou've played {count} games in the last hour.\n\n"
                         f"Please take a break and try again later.\n\n"
                         f"_Maximum {limit} games per hour._"),
            )
        return RateLimitResult(allowed=True, count=count, limit=limit)

    def check_perfect_game_limit(self, user_id: str) -> PerfectGameCheck:
        today = self.clock().date()
        outcome = best_effort("perfect game lookup", self.store.sessions_for_user, user_id)
        if not outcome.ok:
            return PerfectGameCheck(suspicious=False)

        count = sum(
            1 for s in outcome.value
            if s.status == "won"
            and s.completed_at is not None and s.completed_at.date() == today
            and s.highest_question >= self.thresholds.questions_per_game
        )
        limit = self.thresholds.max_perfect_games_per_day
        if count >= limit:
            self.alerts.flag_for_review(user_id, f"{count} perfect games today - unusual pattern")
            return PerfectGameCheck(suspicious=True, count=count, limit=limit)
        return PerfectGameCheck(suspicious=False, count=count, limit=limit)
