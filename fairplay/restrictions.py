"""
RESTRICTION & ESCALATION CONTROLLER - Who may play, and under which timer

Per-user flags are INDEPENDENT and composable:

    permanent suspension      admin only
    temporary suspension      always carries an expiry, cleared lazily on read
    Q1-timeout streak         2 -> warning notice, 3 -> 36h suspension + penalty
    penalty mode              N games at a 10s timer, decremented per game
    grand-prize cooldown      blocks competitive modes only
    daily win cap             derived from today's prize ledger
    suspicious flag           append-only history, never auto-cleared

GATE (can_play):
    practice     -> only permanent suspension blocks
    competitive  -> permanent > temporary > cooldown > daily cap
    anything else is played through with a timer and optional notices.

The gate FAILS OPEN: an internal error yields allowed=True, never a block.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from .alerts import AlertBook
from .audit import AuditEventType, AuditTrail
from .config import RestrictionPolicy
from .models import RestrictionState, Severity, SuspiciousFlag, TimeoutEvidence
from .outcome import StorageError, best_effort
from .storage import Clock, ExpiringStore, FraudStore
from .telemetry import RateLimitResult

logger = logging.getLogger(__name__)


class GateReason(str, Enum):
    SUSPENDED = "suspended"
    TEMP_SUSPENDED = "temp_suspended"
    COOLDOWN = "cooldown"
    DAILY_LIMIT = "daily_limit"
    MAINTENANCE = "maintenance"
    RATE_LIMITED = "rate_limited"


class Q1Action(str, Enum):
    NONE = "none"
    WARNING = "warning"
    SUSPENSION = "suspension"


@dataclass
class GateDecision:
    allowed: bool
    reason: Optional[GateReason] = None
    user_message: Optional[str] = None
    timer_seconds: Optional[int] = None
    notices: List[str] = field(default_factory=list)


@dataclass
class Q1TimeoutResult:
    action: Q1Action
    streak: int


@dataclass
class TempSuspensionStatus:
    suspended: bool
    until: Optional[datetime] = None
    hours_remaining: int = 0
    reason: Optional[str] = None


@dataclass
class PenaltyStatus:
    in_penalty: bool
    games_remaining: int = 0
    timer_seconds: Optional[int] = None


@dataclass
class CooldownStatus:
    on_cooldown: bool
    until: Optional[datetime] = None
    days_remaining: int = 0


@dataclass
class DailyLimitStatus:
    limit_reached: bool
    current_winnings: float
    limit: float
    remaining: float


@dataclass
class MaintenanceStatus:
    active: bool
    message: Optional[str] = None


# ======================================================================
# USER-FACING TEMPLATES
# ======================================================================

def suspension_message(reason: Optional[str]) -> str:
    return ("⛔ ACCOUNT SUSPENDED ⛔\n\n"
            "Your account has been suspended.\n\n"
            f"Reason: {reason or 'Suspicious activity detected'}\n\n"
            "If you believe this is an error, please contact support.")


def temp_suspension_message(status: TempSuspensionStatus, penalty_games: int) -> str:
    return ("⛔ TEMPORARY SUSPENSION ⛔\n\n"
            f"Your account is suspended for {status.hours_remaining} more hour(s).\n\n"
            f"📋 Reason: {status.reason}\n\n"
            f"⏳ Suspension lifts: {status.until.strftime('%a %d %b, %H:%M')}\n\n"
            f"⚠️ When you return, your next {penalty_games} games will have reduced timers.\n\n"
            "✅ Practice mode is still available!")


def q1_warning_message() -> str:
    return ("⚠️ FAIR PLAY REMINDER ⚠️\n\n"
            "You have timed out on the first question in your recent games.\n\n"
            "Using search engines, voice assistants or AI tools goes against the spirit of the game.\n\n"
            "⚠️ Continued violations will result in a temporary suspension.\n\n"
            "💡 Tip: Try Practice mode to sharpen your skills!")


def q1_suspension_message(policy: RestrictionPolicy) -> str:
    return ("🚫 ACCOUNT TEMPORARILY SUSPENDED 🚫\n\n"
            f"Your account has been suspended for {policy.q1_suspension_hours} hours after "
            "repeatedly timing out on the first question.\n\n"
            "📋 What happens next:\n"
            f"• Suspension lasts {policy.q1_suspension_hours} hours\n"
            f"• After that: {policy.penalty_games} games with a "
            f"{policy.penalty_timer_seconds}s timer per question\n"
            "• Practice mode remains available")


def probation_message(games_remaining: int, timer_seconds: int) -> str:
    return ("⚠️ PROBATION MODE ⚠️\n\n"
            f"⏱️ All questions will have a {timer_seconds}-second timer.\n"
            f"📊 Games remaining on probation: {games_remaining}\n\n"
            "Play fair and your timers will return to normal! 💪")


def cooldown_message(status: CooldownStatus) -> str:
    return ("🏆 CHAMPION COOLDOWN 🏆\n\n"
            "Congratulations on your grand prize win! 🎉\n\n"
            "To give others a fair chance, champions wait before playing competitive modes again.\n\n"
            f"⏳ Cooldown ends: {status.until.strftime('%A, %d %B %Y')}\n"
            f"📅 Days remaining: {status.days_remaining}\n\n"
            "✅ Practice mode is still available!")


def daily_limit_message(status: DailyLimitStatus) -> str:
    return ("🎉 DAILY LIMIT REACHED 🎉\n\n"
            f"You've won {status.current_winnings:,.0f} today!\n\n"
            f"The daily maximum is {status.limit:,.0f} to keep play fair for everyone.\n\n"
            "⏰ Come back tomorrow for more chances to win!\n\n"
            "✅ Practice mode is still available!")


def rate_limit_message() -> str:
    return ("⚠️ SLOW DOWN ⚠️\n\n"
            "You're sending messages too quickly.\n\n"
            "Please wait a moment and try again.")


def maintenance_message(custom: Optional[str] = None) -> str:
    return custom or ("🔧 MAINTENANCE MODE 🔧\n\n"
                      "We're undergoing scheduled maintenance.\n\n"
                      "We'll be back shortly! Thank you for your patience. 🙏")


# ======================================================================
# CONTROLLER
# ======================================================================

class RestrictionController:

    def __init__(
        self,
        policy: RestrictionPolicy,
        store: FraudStore,
        ephemeral: ExpiringStore,
        alerts: AlertBook,
        audit: AuditTrail,
        clock: Clock = datetime.now,
    ):
        self.policy = policy
        self.store = store
        self.ephemeral = ephemeral
        self.alerts = alerts
        self.audit = audit
        self.clock = clock

    def _log_admin(self, admin_id: Optional[str], action: str, user_id: str, details: Optional[Dict] = None):
        best_effort("admin log", self.store.log_admin_activity, admin_id, action, user_id, details or {})

    def is_competitive(self, mode: str) -> bool:
        return mode != self.policy.practice_mode

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def can_play(self, user_id: str, mode: str = "classic") -> GateDecision:
        try:
            return self._evaluate(user_id, mode)
        except Exception as e:
            logger.error(f"Gate check failed for user {user_id}, allowing play: {e}")
            return GateDecision(allowed=True, timer_seconds=self.policy.normal_timer_seconds)

    def _evaluate(self, user_id: str, mode: str) -> GateDecision:
        state = self.store.load_restriction(user_id)

        if state.is_suspended:
            return self._block(user_id, GateReason.SUSPENDED, suspension_message(state.suspension_reason))

        if not self.is_competitive(mode):
            return GateDecision(allowed=True, timer_seconds=self.policy.normal_timer_seconds)

        temp = self._temp_status(state)
        if temp.suspended:
            return self._block(user_id, GateReason.TEMP_SUSPENDED,
                               temp_suspension_message(temp, self.policy.penalty_games))

        cooldown = self._cooldown(state)
        if cooldown.on_cooldown:
            return self._block(user_id, GateReason.COOLDOWN, cooldown_message(cooldown))

        daily = self._daily_limit(user_id)
        if daily.limit_reached:
            return self._block(user_id, GateReason.DAILY_LIMIT, daily_limit_message(daily))

        timer = self._timer(state)
        notices = []
        if state.penalty_games_remaining > 0:
            notices.append(probation_message(state.penalty_games_remaining, timer))
        if self._q1_streak(state) >= self.policy.q1_warning_streak:
            notices.append(q1_warning_message())
        return GateDecision(allowed=True, timer_seconds=timer, notices=notices)

    @staticmethod
    def _block(user_id: str, reason: GateReason, message: str) -> GateDecision:
        logger.info(f"🚫 Play blocked for user {user_id}: {reason.value}")
        return GateDecision(allowed=False, reason=reason, user_message=message)

    # ------------------------------------------------------------------
    # Permanent suspension
    # ------------------------------------------------------------------

    def suspend_user(self, user_id: str, reason: str, admin_id: Optional[str] = None) -> bool:
        try:
            state = self.store.load_restriction(user_id)
            state.is_suspended = True
            state.suspension_reason = reason
            state.suspended_at = self.clock()
            state.suspended_by = admin_id
            self.store.save_restriction(state)
        except StorageError as e:
            logger.error(f"Error suspending user {user_id}: {e}")
            return False
        self._log_admin(admin_id, "suspend_user", user_id, {"reason": reason})
        logger.warning(f"⛔ User {user_id} suspended by admin {admin_id}: {reason}")
        return True

    def unsuspend_user(self, user_id: str, admin_id: Optional[str] = None) -> bool:
        try:
            state = self.store.load_restriction(user_id)
            state.is_suspended = False
            state.suspension_reason = None
            state.suspended_at = None
            state.suspended_by = None
            self.store.save_restriction(state)
        except StorageError as e:
            logger.error(f"Error unsuspending user {user_id}: {e}")
            return False
        self._log_admin(admin_id, "unsuspend_user", user_id)
        logger.info(f"User {user_id} unsuspended by admin {admin_id}")
        return True

    # ------------------------------------------------------------------
    # Temporary suspension
    # ------------------------------------------------------------------

    def set_temp_suspension(self, user_id: str, reason: str, hours: Optional[int] = None,
                            with_penalty: bool = True) -> bool:
        """Suspend until now + hours; optionally schedule penalty mode for the return."""
        try:
            state = self.store.load_restriction(user_id)
            self._apply_temp_suspension(state, reason, hours, with_penalty)
            self.store.save_restriction(state)
        except StorageError as e:
            logger.error(f"Error setting temp suspension for user {user_id}: {e}")
            return False
        return True

    def _apply_temp_suspension(self, state: RestrictionState, reason: str,
                               hours: Optional[int], with_penalty: bool):
        if hours is None:
            hours = self.policy.q1_suspension_hours
        state.temp_suspended_until = self.clock() + timedelta(hours=hours)
        state.temp_suspension_reason = reason
        state.suspicious_user = True
        if with_penalty:
            state.penalty_games_remaining = self.policy.penalty_games
            state.penalty_timer_seconds = self.policy.penalty_timer_seconds
        logger.warning(f"⛔ Temp suspension for user {state.user_id}: {hours}h, reason: {reason}")

    def temp_suspension_status(self, user_id: str) -> TempSuspensionStatus:
        try:
            return self._temp_status(self.store.load_restriction(user_id))
        except StorageError as e:
            logger.error(f"Error checking temp suspension for user {user_id}: {e}")
            return TempSuspensionStatus(suspended=False)

    def _temp_status(self, state: RestrictionState) -> TempSuspensionStatus:
        until = state.temp_suspended_until
        if until is None:
            return TempSuspensionStatus(suspended=False)

        now = self.clock()
        if until > now:
            return TempSuspensionStatus(
                suspended=True,
                until=until,
                hours_remaining=math.ceil((until - now).total_seconds() / 3600),
                reason=state.temp_suspension_reason or "Fair play violation",
            )

        # Expired: clear it as a side effect of the read.
        state.temp_suspended_until = None
        state.temp_suspension_reason = None
        self.store.save_restriction(state)
        logger.info(f"Temp suspension expired for user {state.user_id}")
        return TempSuspensionStatus(suspended=False)

    # ------------------------------------------------------------------
    # Q1 timeout streak
    # ------------------------------------------------------------------

    def _q1_streak(self, state: RestrictionState) -> int:
        """Current streak, treating a quiet period as a reset."""
        if state.q1_timeout_last is None:
            return state.q1_timeout_streak
        quiet = self.clock() - state.q1_timeout_last
        if quiet > timedelta(hours=self.policy.q1_streak_reset_hours):
            return 0
        return state.q1_timeout_streak

    def track_q1_timeout(self, user_id: str, session_id: Optional[str] = None) -> Q1TimeoutResult:
        try:
            state = self.store.load_restriction(user_id)
            streak = self._q1_streak(state) + 1
            state.q1_timeout_streak = streak
            state.q1_timeout_last = self.clock()

            if streak >= self.policy.q1_suspend_streak:
                action = Q1Action.SUSPENSION
                self._apply_temp_suspension(state, "Repeated first-question timeouts",
                                            self.policy.q1_suspension_hours, with_penalty=True)
                state.suspicious_flags.append(SuspiciousFlag(
                    type="q1_timeout_abuse",
                    details={"streak": streak, "session_id": session_id},
                    timestamp=self.clock(),
                ))
                state.q1_timeout_streak = 0
            elif streak >= self.policy.q1_warning_streak:
                action = Q1Action.WARNING
            else:
                action = Q1Action.NONE
            self.store.save_restriction(state)
        except StorageError as e:
            logger.error(f"Error tracking Q1 timeout for user {user_id}: {e}")
            return Q1TimeoutResult(action=Q1Action.NONE, streak=0)

        logger.warning(f"⚠️ Q1 timeout: user {user_id}, streak {streak}, action {action.value}")
        self.audit.log_event(session_id, user_id, AuditEventType.Q1_TIMEOUT,
                             {"streak": streak, "action": action.value})
        if action == Q1Action.SUSPENSION:
            self.alerts.raise_alert(
                user_id, "q1_timeout_abuse", Severity.MEDIUM,
                f"{streak} consecutive first-question timeouts; suspended "
                f"{self.policy.q1_suspension_hours}h",
                [TimeoutEvidence(session_id=session_id, streak=streak, action=action.value)],
            )
        return Q1TimeoutResult(action=action, streak=streak)

    def record_first_answer_correct(self, user_id: str) -> bool:
        try:
            state = self.store.load_restriction(user_id)
            if state.q1_timeout_streak == 0:
                return True
            state.q1_timeout_streak = 0
            self.store.save_restriction(state)
        except StorageError as e:
            logger.error(f"Error resetting Q1 streak for user {user_id}: {e}")
            return False
        logger.info(f"Q1 streak reset for user {user_id}")
        return True

    # ------------------------------------------------------------------
    # Penalty mode
    # ------------------------------------------------------------------

    def penalty_status(self, user_id: str) -> PenaltyStatus:
        outcome = best_effort("penalty status", self.store.load_restriction, user_id)
        if not outcome.ok or outcome.value.penalty_games_remaining <= 0:
            return PenaltyStatus(in_penalty=False)
        state = outcome.value
        return PenaltyStatus(
            in_penalty=True,
            games_remaining=state.penalty_games_remaining,
            timer_seconds=state.penalty_timer_seconds or self.policy.penalty_timer_seconds,
        )

    def complete_game(self, user_id: str) -> int:
        """Count one finished game against penalty mode; returns games left."""
        try:
            state = self.store.load_restriction(user_id)
            if state.penalty_games_remaining <= 0:
                return 0
            state.penalty_games_remaining -= 1
            if state.penalty_games_remaining == 0:
                state.penalty_timer_seconds = None
            self.store.save_restriction(state)
        except StorageError as e:
            logger.error(f"Error decrementing penalty games for user {user_id}: {e}")
            return 0

        if state.penalty_games_remaining == 0:
            logger.info(f"✅ Penalty mode ended for user {user_id}")
        else:
            logger.info(f"Penalty games remaining for user {user_id}: {state.penalty_games_remaining}")
        return state.penalty_games_remaining

    def _timer(self, state: RestrictionState) -> int:
        if state.penalty_games_remaining > 0:
            return state.penalty_timer_seconds or self.policy.penalty_timer_seconds
        return self.policy.normal_timer_seconds

    def question_timer(self, user_id: str) -> int:
        outcome = best_effort("question timer", self.store.load_restriction, user_id)
        if not outcome.ok:
            return self.policy.normal_timer_seconds
        return self._timer(outcome.value)

    # ------------------------------------------------------------------
    # Grand-prize cooldown
    # ------------------------------------------------------------------

    def set_grand_prize_cooldown(self, user_id: str, days: Optional[int] = None) -> bool:
        if days is None:
            days = self.policy.grand_prize_cooldown_days
        try:
            state = self.store.load_restriction(user_id)
            now = self.clock()
            state.last_grand_prize_win = now
            state.grand_prize_cooldown_until = now + timedelta(days=days)
            self.store.save_restriction(state)
        except StorageError as e:
            logger.error(f"Error setting grand prize cooldown for user {user_id}: {e}")
            return False
        logger.info(f"🏆 Grand prize cooldown set for user {user_id}: {days} days")
        return True

    def clear_grand_prize_cooldown(self, user_id: str, admin_id: Optional[str] = None) -> bool:
        try:
            state = self.store.load_restriction(user_id)
            state.grand_prize_cooldown_until = None
            self.store.save_restriction(state)
        except StorageError as e:
            logger.error(f"Error clearing cooldown for user {user_id}: {e}")
            return False
        if admin_id:
            self._log_admin(admin_id, "clear_cooldown", user_id)
        logger.info(f"Grand prize cooldown cleared for user {user_id}")
        return True

    def cooldown_status(self, user_id: str) -> CooldownStatus:
        outcome = best_effort("cooldown status", self.store.load_restriction, user_id)
        if not outcome.ok:
            return CooldownStatus(on_cooldown=False)
        return self._cooldown(outcome.value)

    def _cooldown(self, state: RestrictionState) -> CooldownStatus:
        until = state.grand_prize_cooldown_until
        now = self.clock()
        if until is None or until <= now:
            return CooldownStatus(on_cooldown=False)
        return CooldownStatus(
            on_cooldown=True,
            until=until,
            days_remaining=math.ceil((until - now).total_seconds() / 86400),
        )

    # ------------------------------------------------------------------
    # Daily win cap
    # ------------------------------------------------------------------

    def daily_winnings(self, user_id: str, day=None) -> float:
        day = day or self.clock().date()
        outcome = best_effort("daily winnings", self.store.prizes_on, day, user_id)
        if not outcome.ok:
            return 0.0
        return float(sum(p.amount for p in outcome.value))

    def daily_limit_status(self, user_id: str) -> DailyLimitStatus:
        return self._daily_limit(user_id)

    def _daily_limit(self, user_id: str) -> DailyLimitStatus:
        limit = self.policy.daily_win_limit
        current = self.daily_winnings(user_id)
        reached = current >= limit
        return DailyLimitStatus(
            limit_reached=reached,
            current_winnings=current,
            limit=limit,
            remaining=0.0 if reached else limit - current,
        )

    # ------------------------------------------------------------------
    # Suspicious flag
    # ------------------------------------------------------------------

    def flag_suspicious(self, user_id: str, flag_type: str, details: Optional[Dict] = None) -> bool:
        try:
            state = self.store.load_restriction(user_id)
            state.suspicious_user = True
            state.suspicious_flags.append(SuspiciousFlag(
                type=flag_type, details=dict(details or {}), timestamp=self.clock()))
            self.store.save_restriction(state)
        except StorageError as e:
            logger.error(f"Error flagging user {user_id} suspicious: {e}")
            return False
        logger.warning(f"🚩 User {user_id} flagged suspicious: {flag_type}")
        return True

    def suspicious_status(self, user_id: str) -> Dict:
        outcome = best_effort("suspicious status", self.store.load_restriction, user_id)
        if not outcome.ok:
            return {"suspicious": False, "flags": []}
        return {"suspicious": outcome.value.suspicious_user, "flags": outcome.value.suspicious_flags}

    # ------------------------------------------------------------------
    # Rate limit / maintenance
    # ------------------------------------------------------------------

    def check_rate_limit(self, identifier: str, action: str, max_requests: int = 30,
                         window_minutes: int = 1) -> RateLimitResult:
        key = f"rate_limit:{action}:{identifier}"
        try:
            current = self.ephemeral.incr(key)
            if current == 1:
                self.ephemeral.expire(key, window_minutes * 60)
        except StorageError as e:
            logger.error(f"Error checking rate limit for {identifier}: {e}")
            return RateLimitResult(allowed=True)

        if current > max_requests:
            return RateLimitResult(allowed=False, count=current, limit=max_requests,
                                   message=rate_limit_message())
        return RateLimitResult(allowed=True, count=current, limit=max_requests)

    def maintenance_status(self) -> MaintenanceStatus:
        if not self.policy.maintenance_mode:
            return MaintenanceStatus(active=False)
        return MaintenanceStatus(active=True, message=maintenance_message(self.policy.maintenance_message))

    # ------------------------------------------------------------------
    # Admin listings
    # ------------------------------------------------------------------

    def _states(self) -> List[RestrictionState]:
        outcome = best_effort("restriction listing", self.store.all_restrictions)
        return outcome.value if outcome.ok else []

    def suspended_users(self) -> List[RestrictionState]:
        rows = [s for s in self._states() if s.is_suspended]
        return sorted(rows, key=lambda s: s.suspended_at or datetime.min, reverse=True)

    def temp_suspended_users(self) -> List[RestrictionState]:
        now = self.clock()
        rows = [s for s in self._states() if s.temp_suspended_until and s.temp_suspended_until > now]
        return sorted(rows, key=lambda s: s.temp_suspended_until)

    def penalty_users(self) -> List[RestrictionState]:
        rows = [s for s in self._states() if s.penalty_games_remaining > 0]
        return sorted(rows, key=lambda s: s.penalty_games_remaining, reverse=True)

    def suspicious_users(self, limit: int = 50) -> List[RestrictionState]:
        return [s for s in self._states() if s.suspicious_user][:limit]

    def users_on_cooldown(self) -> List[RestrictionState]:
        now = self.clock()
        rows = [s for s in self._states()
                if s.grand_prize_cooldown_until and s.grand_prize_cooldown_until > now]
        return sorted(rows, key=lambda s: s.grand_prize_cooldown_until)

    def users_at_daily_limit(self) -> List[Dict]:
        outcome = best_effort("daily limit listing", self.store.prizes_on, self.clock().date())
        if not outcome.ok:
            return []
        totals = defaultdict(float)
        for prize in outcome.value:
            totals[prize.user_id] += prize.amount
        rows = [{"user_id": uid, "today_winnings": total}
                for uid, total in totals.items() if total >= self.policy.daily_win_limit]
        return sorted(rows, key=lambda r: r["today_winnings"], reverse=True)

    # ------------------------------------------------------------------
    # Fraud-flag administration
    # ------------------------------------------------------------------

    def fraud_report(self, user_id: str) -> Optional[Dict]:
        try:
            counters = self.store.load_counters(user_id)
            state = self.store.load_restriction(user_id)
            sessions = [s for s in self.store.sessions_for_user(user_id) if s.suspicious][:10]
            actions = self.store.admin_activity_for(user_id)
        except StorageError as e:
            logger.error(f"Error building fraud report for user {user_id}: {e}")
            return None

        return {
            "user_id": user_id,
            "fraud_flags": counters.fraud_flags,
            "multi_account_flags": counters.multi_account_flags,
            "last_fraud_check": counters.last_fraud_check,
            "is_suspended": state.is_suspended,
            "suspicious_user": state.suspicious_user,
            "suspicious_flags": [f.model_dump() for f in state.suspicious_flags],
            "suspicious_sessions": [
                {"session_id": s.session_id, "started_at": s.started_at,
                 "avg_response_time_ms": s.avg_response_time_ms,
                 "fastest_response_ms": s.fastest_response_ms}
                for s in sessions
            ],
            "alerts": [a.model_dump() for a in self.alerts.alerts_for_user(user_id)],
            "admin_actions": actions,
        }

    def flagged_users(self, limit: int = 50) -> List[Dict]:
        outcome = best_effort("flagged users", self.store.all_counters)
        if not outcome.ok:
            return []
        flagged = [c for c in outcome.value if c.fraud_flags > 0]
        flagged.sort(key=lambda c: (c.fraud_flags, c.last_fraud_check or datetime.min), reverse=True)
        return [c.model_dump() for c in flagged[:limit]]

    def clear_fraud_flags(self, user_id: str, admin_id: str) -> bool:
        return self.alerts.clear_flags(user_id, admin_id)
