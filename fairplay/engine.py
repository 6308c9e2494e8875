"""
FAIR PLAY ENGINE - Facade the game engine talks to

Wires configuration, both stores, the audit trail, the alert book and the
five components, and exposes the per-session entry points:

    start_session -> question_shown -> answer_given / question_timed_out
                  -> maybe_challenge -> submit_challenge -> end_session

plus observe_device / observe_ip for the correlation graph. Only the gate
decides anything user-visible; everything else is enrichment and never
raises into gameplay.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Optional

from .alerts import AlertBook
from .audit import AuditEventType, AuditTrail
from .behavior import BehaviorAggregator, SessionCheck
from .captcha import CaptchaResult, CaptchaService, Challenge
from .config import EngineConfig, load_config
from .correlation import DeviceCorrelationGraph, fingerprint
from .models import BehaviorProfile, GameSessionRecord, SessionSummary
from .notifier import AlertDispatcher
from .outcome import Outcome, Skipped, best_effort
from .restrictions import GateDecision, GateReason, Q1TimeoutResult, RestrictionController
from .storage import Clock, ExpiringStore, FraudStore
from .telemetry import SessionTelemetryRecorder

logger = logging.getLogger(__name__)


@dataclass
class SessionEnd:
    summary: Optional[SessionSummary]
    check: SessionCheck
    penalty_games_remaining: int = 0


class FairPlayEngine:

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clock: Clock = datetime.now,
        rng: Optional[random.Random] = None,
        store: Optional[FraudStore] = None,
        ephemeral: Optional[ExpiringStore] = None,
    ):
        self.config = config or load_config()
        self.clock = clock
        self.store = store or FraudStore(clock)
        self.ephemeral = ephemeral or ExpiringStore(clock)

        self.audit = AuditTrail(self.store, clock)
        self.alerts = AlertBook(self.store, self.audit, clock)
        self.dispatcher = AlertDispatcher(self.config.alert_webhook_url)
        if self.config.alert_webhook_url:
            self.alerts.subscribe(self.dispatcher)

        self.telemetry = SessionTelemetryRecorder(
            self.config.telemetry, self.ephemeral, self.store, self.alerts, self.audit, clock)
        self.captcha = CaptchaService(
            self.config.captcha, self.ephemeral, self.store, self.audit, rng, clock)
        self.correlation = DeviceCorrelationGraph(
            self.config.correlation, self.store, self.alerts, clock)
        self.behavior = BehaviorAggregator(
            self.config.behavior, self.store, self.alerts, clock,
            questions_per_game=self.config.telemetry.questions_per_game)
        self.restrictions = RestrictionController(
            self.config.restrictions, self.store, self.ephemeral, self.alerts, self.audit, clock)

        logger.info("✅ Fair play engine initialized")

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(self, session_id: str, user_id: str, mode: str = "classic") -> GateDecision:
        maintenance = self.restrictions.maintenance_status()
        if maintenance.active:
            return GateDecision(allowed=False, reason=GateReason.MAINTENANCE,
                                user_message=maintenance.message)

        decision = self.restrictions.can_play(user_id, mode)
        if not decision.allowed:
            return decision

        if self.restrictions.is_competitive(mode):
            rate = self.telemetry.check_game_rate_limit(user_id)
            if not rate.allowed:
                return GateDecision(allowed=False, reason=GateReason.RATE_LIMITED,
                                    user_message=rate.message)

        best_effort("session start", self.store.save_session, GameSessionRecord(
            session_id=session_id, user_id=user_id, mode=mode, started_at=self.clock()))
        self.audit.log_event(session_id, user_id, AuditEventType.GAME_START,
                             {"mode": mode, "timer_seconds": decision.timer_seconds})
        logger.info(f"🎮 Session {session_id} started for user {user_id} ({mode}, "
                    f"{decision.timer_seconds}s timer)")
        return decision

    def question_shown(self, session_id: str, question_number: int) -> Outcome:
        return self.telemetry.record_question_start(session_id, question_number)

    def answer_given(self, session_id: str, user_id: str, question_number: int, correct: bool,
                     response_time_ms: Optional[int] = None) -> Outcome:
        if response_time_ms is None:
            response_time_ms = self.telemetry.elapsed_ms(session_id, question_number)
        if response_time_ms is None:
            return Skipped(reason=f"no start marker for Q{question_number}")

        outcome = self.telemetry.record_answer(session_id, user_id, question_number, response_time_ms)
        self.audit.log_event(session_id, user_id, AuditEventType.ANSWER_GIVEN, {
            "question_number": question_number,
            "correct": correct,
            "response_time_ms": response_time_ms,
        })
        if question_number == 1 and correct:
            self.restrictions.record_first_answer_correct(user_id)
        return outcome

    def question_timed_out(self, session_id: str, user_id: str,
                           question_number: int) -> Optional[Q1TimeoutResult]:
        self.audit.log_event(session_id, user_id, AuditEventType.TIMEOUT,
                             {"question_number": question_number})
        if question_number != 1:
            return None
        return self.restrictions.track_q1_timeout(user_id, session_id)

    def maybe_challenge(self, session_id: str, user_id: str, question_number: int,
                        shown: Optional[Iterable[int]] = None) -> Optional[Challenge]:
        return self.captcha.maybe_challenge(session_id, user_id, question_number, shown)

    def submit_challenge(self, session_id: str, user_id: str, question_number: int,
                         answer, response_ms: int, challenge: Optional[Challenge] = None) -> CaptchaResult:
        result = self.captcha.submit(session_id, user_id, question_number, challenge, answer, response_ms)
        pattern = self.captcha.check_suspicious_patterns(user_id)
        if pattern.suspicious:
            self.restrictions.flag_suspicious(user_id, "captcha_pattern", {
                "flags": pattern.flags,
                "pass_rate": pattern.pass_rate,
                "avg_response_ms": pattern.avg_response_ms,
            })
        return result

    def end_session(self, session_id: str, user_id: str, status: str = "completed",
                    score: float = 0.0, highest_question: int = 0, prize_amount: float = 0.0,
                    grand_prize: bool = False) -> SessionEnd:
        response_times = self.telemetry.response_times(session_id)
        record = self._close_record(session_id, user_id, status, score, highest_question)

        summary = self.telemetry.finalize_session(session_id, user_id)
        refreshed = self.behavior.update_profile(user_id)
        profile = refreshed.value if refreshed.ok and isinstance(refreshed.value, BehaviorProfile) else None
        check = self.behavior.analyze_session(user_id, response_times, highest_question, profile=profile)
        if check.should_flag:
            self._mark_session_suspicious(session_id)
            self.restrictions.flag_suspicious(user_id, "session_warnings", {
                "session_id": session_id,
                "warnings": [w["type"] for w in check.warnings],
            })

        remaining = 0
        competitive = self.restrictions.is_competitive(record.mode if record else "classic")
        if competitive:
            remaining = self.restrictions.complete_game(user_id)
        if prize_amount > 0:
            best_effort("prize ledger", self.store.add_prize, user_id, prize_amount)
        if grand_prize and competitive:
            self.restrictions.set_grand_prize_cooldown(user_id)

        self.audit.log_event(session_id, user_id, AuditEventType.GAME_END, {
            "status": status,
            "score": score,
            "highest_question": highest_question,
            "suspicious": bool(summary and summary.is_suspicious) or check.should_flag,
        })

        if status == "won":
            self.telemetry.check_perfect_game_limit(user_id)
        return SessionEnd(summary=summary, check=check, penalty_games_remaining=remaining)

    def _close_record(self, session_id: str, user_id: str, status: str, score: float,
                      highest_question: int) -> Optional[GameSessionRecord]:
        outcome = best_effort("session read", self.store.get_session, session_id)
        if not outcome.ok:
            return None
        now = self.clock()
        record = outcome.value or GameSessionRecord(session_id=session_id, user_id=user_id, started_at=now)
        record.status = status
        record.score = score
        record.highest_question = highest_question
        record.completed_at = now
        saved = best_effort("session close", self.store.save_session, record)
        return record if saved.ok else None

    def _mark_session_suspicious(self, session_id: str):
        outcome = best_effort("session read", self.store.get_session, session_id)
        if outcome.ok and outcome.value is not None:
            outcome.value.suspicious = True
            best_effort("session flag", self.store.save_session, outcome.value)

    # ------------------------------------------------------------------
    # Identity observations
    # ------------------------------------------------------------------

    def observe_device(self, user_id: str, platform: str, user_identifier: Optional[str],
                       device_type: Optional[str] = None, os_version: Optional[str] = None,
                       app_version: Optional[str] = None, info: Optional[Dict[str, str]] = None) -> Outcome:
        device_id = fingerprint(platform, user_identifier, device_type, os_version, app_version)
        return self.correlation.record_device(user_id, device_id, platform, info)

    def observe_ip(self, user_id: str, address: str, action: str = "game_start") -> Outcome:
        return self.correlation.record_ip(user_id, address, action)
