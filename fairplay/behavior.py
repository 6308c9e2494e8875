"""
BEHAVIORAL PATTERN AGGREGATOR - Historical stats and anomaly scoring per user

KEY DESIGN:
1. Needs >= 10 sessions in the trailing 30 days, otherwise InsufficientData
   (an answer, not an error).
2. Anomaly score is an additive sum of independent rules, clamped to
   [0, 100]. Each rule carries its own points and severity.
3. Profiles are upserted: the last recompute wins.
4. Escalation: score >= 50 raises a behavioral_anomaly alert,
   score >= 70 also bumps the permanent fraud-flag counter.

RULES (points, severity):
    response_too_fast          30  high     min response < 1500ms
    avg_response_suspicious    20  medium   avg response < 2500ms
    too_many_perfect_games     25  high     >= 3 perfect games in window
    sudden_skill_jump          20  medium   win rate +30pp vs prior week
    too_consistent             15  medium   stddev < 500ms, > 20 games
    unusual_hours              10  low      > 18 active hours, > 50 games
    high_volume                15  medium   > 20 games per active day
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from .alerts import AlertBook
from .config import BehaviorThresholds
from .models import (
    AnomalyReason, BehavioralEvidence, BehaviorProfile, GameSessionRecord, Severity, SkillTrend,
)
from .outcome import Ok, Outcome, best_effort
from .storage import Clock, FraudStore

logger = logging.getLogger(__name__)

FINISHED = ("completed", "won")


@dataclass(frozen=True)
class InsufficientData:
    sessions: int
    required: int


@dataclass
class SkillTrendResult:
    trend: SkillTrend
    sudden_jump: bool
    previous_win_rate: float
    current_win_rate: float


@dataclass
class SessionCheck:
    suspicious: bool
    warnings: List[Dict] = field(default_factory=list)
    should_flag: bool = False


def _finished(session: GameSessionRecord) -> bool:
    return session.status in FINISHED


def _win_rate(sessions: Sequence[GameSessionRecord]) -> float:
    if not sessions:
        return 0.0
    return sum(1 for s in sessions if s.score > 0) / len(sessions)


class BehaviorAggregator:

    def __init__(self, thresholds: BehaviorThresholds, store: FraudStore,
                 alerts: AlertBook, clock: Clock = datetime.now, questions_per_game: int = 15):
        self.thresholds = thresholds
        self.store = store
        self.alerts = alerts
        self.clock = clock
        self.questions_per_game = questions_per_game

    # ==================================================================
    # PROFILE RECOMPUTE
    # ==================================================================

    def update_profile(self, user_id: str) -> Outcome:
        """
        Recompute and upsert the user's profile.

        Ok(BehaviorProfile) on success, Ok(InsufficientData) when the window
        is too thin, Skipped when the store is unreachable.
        """
        since = self.clock() - timedelta(days=self.thresholds.window_days)
        outcome = best_effort("behavior sessions", self.store.sessions_for_user, user_id, since)
        if not outcome.ok:
            return outcome

        sessions: List[GameSessionRecord] = outcome.value
        if len(sessions) < self.thresholds.min_sessions:
            return Ok(InsufficientData(sessions=len(sessions), required=self.thresholds.min_sessions))

        profile = self.calculate_patterns(user_id, sessions)
        trend = self.skill_trend(sessions)
        profile.skill_trend = trend.trend
        reasons = self.detect_anomalies(profile, sessions, trend)
        profile.anomaly_reasons = reasons
        profile.anomaly_score = max(0, min(100, sum(r.score for r in reasons)))

        saved = best_effort("behavior profile", self.store.upsert_profile, profile)
        if not saved.ok:
            return saved

        logger.info(f"📊 Behavior profile for user {user_id}: score {profile.anomaly_score}, "
                    f"trend {profile.skill_trend.value}, {profile.total_games} games")
        self._escalate(profile)
        return Ok(profile)

    def calculate_patterns(self, user_id: str, sessions: Sequence[GameSessionRecord]) -> BehaviorProfile:
        finished = [s for s in sessions if _finished(s)]
        averages = [s.avg_response_time_ms for s in finished if s.avg_response_time_ms is not None]
        fastest = [s.fastest_response_ms for s in sessions if s.fastest_response_ms is not None]

        mean = sum(averages) / len(averages) if averages else None
        stddev = (
            math.sqrt(sum((t - mean) ** 2 for t in averages) / len(averages))
            if len(averages) > 1 else 0.0
        )

        play_hours = Counter(s.started_at.hour for s in sessions)
        # Sunday = 0 to match the dashboards.
        play_days = Counter((s.started_at.weekday() + 1) % 7 for s in sessions)
        active_days = len({s.started_at.date() for s in sessions})

        return BehaviorProfile(
            user_id=user_id,
            avg_response_time_ms=round(mean) if mean is not None else None,
            min_response_time_ms=min(fastest) if fastest and averages else None,
            max_response_time_ms=round(max(averages)) if averages else None,
            response_time_stddev=stddev,
            win_rate=round(_win_rate(finished), 4),
            avg_highest_question=(
                round(sum(s.highest_question for s in finished) / len(finished), 2) if finished else 0.0
            ),
            avg_games_per_day=round(len(sessions) / max(active_days, 1), 2),
            play_hours=dict(play_hours),
            play_days=dict(play_days),
            total_games=len(sessions),
            completed_games=len(finished),
            last_updated=self.clock(),
        )

    def skill_trend(self, sessions: Sequence[GameSessionRecord]) -> SkillTrendResult:
        """Win rate over the trailing 7 days against the 7-14 day window before it."""
        now = self.clock()
        week_ago = now - timedelta(days=7)
        fortnight_ago = now - timedelta(days=14)
        finished = [s for s in sessions if _finished(s) and s.started_at >= fortnight_ago]
        recent = [s for s in finished if s.started_at >= week_ago]
        previous = [s for s in finished if s.started_at < week_ago]

        current_rate = _win_rate(recent)
        previous_rate = _win_rate(previous)
        improvement = current_rate - previous_rate
        sudden_jump = (improvement > self.thresholds.skill_jump
                       and len(previous) >= self.thresholds.skill_baseline_sessions)

        if sudden_jump:
            trend = SkillTrend.SUSPICIOUS_JUMP
        elif improvement > self.thresholds.skill_trend_step:
            trend = SkillTrend.IMPROVING
        elif improvement < -self.thresholds.skill_trend_step:
            trend = SkillTrend.DECLINING
        else:
            trend = SkillTrend.STABLE
        return SkillTrendResult(trend=trend, sudden_jump=sudden_jump,
                                previous_win_rate=previous_rate, current_win_rate=current_rate)

    def detect_anomalies(self, profile: BehaviorProfile, sessions: Sequence[GameSessionRecord],
                         trend: SkillTrendResult) -> List[AnomalyReason]:
        t = self.thresholds
        reasons: List[AnomalyReason] = []

        def fire(kind: str, severity: Severity, points: int, description: str):
            reasons.append(AnomalyReason(type=kind, severity=severity, description=description, score=points))

        if profile.min_response_time_ms is not None and profile.min_response_time_ms < t.min_response_ms:
            fire("response_too_fast", Severity.HIGH, 30,
                 f"Minimum response time ({profile.min_response_time_ms}ms) is below human threshold")

        if profile.avg_response_time_ms is not None and profile.avg_response_time_ms < t.suspicious_avg_ms:
            fire("avg_response_suspicious", Severity.MEDIUM, 20,
                 f"Average response time ({profile.avg_response_time_ms}ms) is suspiciously fast")

        perfect = sum(1 for s in sessions if s.status == "won"
                      and s.highest_question >= self.questions_per_game)
        if perfect >= t.suspicious_perfect_games:
            fire("too_many_perfect_games", Severity.HIGH, 25,
                 f"{perfect} perfect games in {t.window_days} days")

        if trend.sudden_jump:
            fire("sudden_skill_jump", Severity.MEDIUM, 20,
                 f"Win rate jumped from {round(trend.previous_win_rate * 100)}% "
                 f"to {round(trend.current_win_rate * 100)}%")

        if (profile.avg_response_time_ms is not None and profile.response_time_stddev < t.low_stddev_ms
                and profile.total_games > t.low_stddev_min_games):
            fire("too_consistent", Severity.MEDIUM, 15,
                 f"Response time variance too low ({round(profile.response_time_stddev)}ms stddev)")

        active_hours = len(profile.play_hours)
        if active_hours > t.broad_hours and profile.total_games > t.broad_hours_min_games:
            fire("unusual_hours", Severity.LOW, 10,
                 f"Active in {active_hours} different hours")

        if profile.avg_games_per_day > t.max_games_per_day:
            fire("high_volume", Severity.MEDIUM, 15,
                 f"Playing {profile.avg_games_per_day} games per day on average")

        return reasons

    def _escalate(self, profile: BehaviorProfile):
        if profile.anomaly_score < self.thresholds.alert_score:
            return

        high = sum(1 for r in profile.anomaly_reasons if r.severity == Severity.HIGH)
        severity = Severity.CRITICAL if high >= 2 else Severity.HIGH if high == 1 else Severity.MEDIUM
        details = "\n".join(f"• {r.description}" for r in profile.anomaly_reasons)
        self.alerts.raise_alert(
            profile.user_id, "behavioral_anomaly", severity,
            f"Behavioral anomalies detected (score: {profile.anomaly_score}):\n{details}",
            [BehavioralEvidence(
                anomaly_score=profile.anomaly_score,
                reasons=[r.type for r in profile.anomaly_reasons],
                skill_trend=profile.skill_trend,
            )],
        )

        if profile.anomaly_score >= self.thresholds.fraud_flag_score:
            self.alerts.flag_for_review(profile.user_id, f"Anomaly score {profile.anomaly_score}")

    # ==================================================================
    # QUERIES
    # ==================================================================

    def get_profile(self, user_id: str) -> Optional[BehaviorProfile]:
        """Stored profile, computed on first request."""
        outcome = best_effort("behavior profile read", self.store.get_profile, user_id)
        if not outcome.ok:
            return None
        if outcome.value is not None:
            return outcome.value

        fresh = self.update_profile(user_id)
        if fresh.ok and isinstance(fresh.value, BehaviorProfile):
            return fresh.value
        return None

    def high_risk_users(self, min_score: int = 50) -> List[BehaviorProfile]:
        outcome = best_effort("high risk users", self.store.list_profiles)
        if not outcome.ok:
            return []
        risky = [p for p in outcome.value if p.anomaly_score >= min_score]
        return sorted(risky, key=lambda p: p.anomaly_score, reverse=True)

    def sweep(self, days: int = 7) -> int:
        """Recompute every user with a session in the trailing window."""
        outcome = best_effort("active users", self.store.active_users_since,
                              self.clock() - timedelta(days=days))
        if not outcome.ok:
            return 0

        refreshed = 0
        for user_id in outcome.value:
            result = self.update_profile(user_id)
            if result.ok and isinstance(result.value, BehaviorProfile):
                refreshed += 1
        logger.info(f"🔄 Behavior sweep refreshed {refreshed} of {len(outcome.value)} active users")
        return refreshed

    # ==================================================================
    # REAL-TIME SESSION CHECK
    # ==================================================================

    def analyze_session(self, user_id: str, response_times: Sequence[int],
                        correct_answers: int, profile: Optional[BehaviorProfile] = None) -> SessionCheck:
        """
        Scoring input only; never blocks the session.

        Pass a freshly computed profile to skip the stored-profile lookup.
        """
        t = self.thresholds
        warnings = []

        fast = [rt for rt in response_times if rt < t.min_response_ms]
        if len(fast) >= t.session_fast_responses:
            warnings.append({
                "type": "multiple_fast_responses",
                "message": f"{len(fast)} responses under {t.min_response_ms}ms",
            })

        if profile is None:
            profile = self.get_profile(user_id)
        if profile is not None and profile.avg_highest_question:
            historical = profile.avg_highest_question
            if correct_answers > historical + t.performance_margin and historical < t.performance_baseline_cap:
                warnings.append({
                    "type": "unusual_performance",
                    "message": f"Scored {correct_answers} vs historical average of {historical}",
                })

        check = SessionCheck(
            suspicious=bool(warnings),
            warnings=warnings,
            should_flag=len(warnings) >= t.session_flag_warnings,
        )
        if check.should_flag:
            logger.warning(f"⚠️ Session check for user {user_id}: "
                           f"{', '.join(w['type'] for w in warnings)}")
        return check
