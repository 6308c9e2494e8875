"""
BEHAVIOR TESTS
Profile aggregation, anomaly rules, escalation tiers and the per-session check.
"""

from datetime import datetime, timedelta

from fairplay.behavior import InsufficientData
from fairplay.models import BehaviorProfile, Severity, SkillTrend


def daily_sessions(add_session, clock, user_id, days=12, **kwargs):
    """One unremarkable game per day at 10:00."""
    today = clock().replace(hour=10, minute=0)
    return [add_session(user_id, today - timedelta(days=d), **kwargs) for d in range(days)]


def bot_history(add_session):
    """Thirty losing games ten days ago, thirty perfect wins three days ago."""
    for i in range(30):
        add_session("bot", datetime(2026, 2, 20) + timedelta(hours=i % 24, minutes=i),
                    status="completed", score=0, highest_question=4,
                    avg_ms=1000 + (i % 5) * 10, fastest_ms=900)
    for i in range(30):
        add_session("bot", datetime(2026, 2, 27, 8) + timedelta(minutes=i * 10),
                    status="won", score=1000, highest_question=15,
                    avg_ms=1000 + (i % 5) * 10, fastest_ms=950)


def test_thin_history_is_insufficient_data(engine, add_session, clock):
    daily_sessions(add_session, clock, "new", days=9)
    outcome = engine.behavior.update_profile("new")
    assert outcome.ok
    assert outcome.value == InsufficientData(sessions=9, required=10)
    assert engine.store.get_profile("new") is None


def test_sessions_outside_window_do_not_count(engine, add_session, clock):
    daily_sessions(add_session, clock, "old", days=40)
    outcome = engine.behavior.update_profile("old")
    assert isinstance(outcome.value, BehaviorProfile)
    assert outcome.value.total_games == 30


def test_store_outage_is_skipped_not_insufficient(engine):
    engine.store.offline = True
    outcome = engine.behavior.update_profile("anyone")
    assert not outcome.ok


def test_clean_user_scores_zero(engine, add_session, clock):
    daily_sessions(add_session, clock, "clean")
    profile = engine.behavior.update_profile("clean").value

    assert profile.anomaly_score == 0
    assert profile.anomaly_reasons == []
    assert profile.skill_trend == SkillTrend.STABLE
    assert profile.avg_response_time_ms == 4000
    assert engine.alerts.alerts_for_user("clean") == []


def test_pattern_statistics(engine, add_session):
    sessions = [
        add_session("p", datetime(2026, 3, 1, 10), status="completed", avg_ms=2000, fastest_ms=1800),
        add_session("p", datetime(2026, 2, 28, 10), status="won", score=100, avg_ms=4000, fastest_ms=3000),
        add_session("p", datetime(2026, 3, 1, 11), status="abandoned", avg_ms=100, fastest_ms=50),
    ]
    profile = engine.behavior.calculate_patterns("p", sessions)

    assert profile.avg_response_time_ms == 3000
    assert profile.max_response_time_ms == 4000
    assert profile.min_response_time_ms == 50
    assert profile.response_time_stddev == 1000.0
    assert profile.win_rate == 0.5
    assert profile.total_games == 3
    assert profile.completed_games == 2
    assert profile.play_hours == {10: 2, 11: 1}
    assert profile.play_days == {0: 2, 6: 1}
    assert profile.avg_games_per_day == 1.5


def test_every_rule_fires_and_score_is_clamped(engine, add_session):
    bot_history(add_session)

    profile = engine.behavior.update_profile("bot").value

    assert {r.type for r in profile.anomaly_reasons} == {
        "response_too_fast", "avg_response_suspicious", "too_many_perfect_games",
        "sudden_skill_jump", "too_consistent", "unusual_hours", "high_volume",
    }
    assert profile.anomaly_score == 100
    assert profile.skill_trend == SkillTrend.SUSPICIOUS_JUMP

    alerts = engine.alerts.alerts_for_user("bot")
    assert [a.alert_type for a in alerts] == ["behavioral_anomaly"]
    assert alerts[0].severity == Severity.CRITICAL
    assert alerts[0].evidence[0].anomaly_score == 100
    assert engine.store.load_counters("bot").fraud_flags == 1


def test_single_high_rule_gives_high_alert(engine, add_session, clock):
    daily_sessions(add_session, clock, "quick", days=10, avg_ms=2000, fastest_ms=1000)

    profile = engine.behavior.update_profile("quick").value

    assert profile.anomaly_score == 50
    alerts = engine.alerts.alerts_for_user("quick")
    assert alerts[0].severity == Severity.HIGH
    assert engine.store.load_counters("quick").fraud_flags == 0


def test_medium_rules_only_give_medium_alert(engine, add_session, clock):
    start = clock().replace(hour=9, minute=0) - timedelta(days=1)
    for i in range(21):
        add_session("grinder", start + timedelta(minutes=i * 5), avg_ms=2000, fastest_ms=1600)

    profile = engine.behavior.update_profile("grinder").value

    assert {r.type for r in profile.anomaly_reasons} == {
        "avg_response_suspicious", "too_consistent", "high_volume"}
    assert profile.anomaly_score == 50
    assert engine.alerts.alerts_for_user("grinder")[0].severity == Severity.MEDIUM


def test_recompute_replaces_profile(engine, add_session, clock):
    daily_sessions(add_session, clock, "u1")
    engine.behavior.update_profile("u1")
    clock.advance(hours=1)
    engine.behavior.update_profile("u1")
    assert len(engine.store.list_profiles()) == 1
    assert engine.store.get_profile("u1").last_updated == clock()


def test_get_profile_computes_on_first_request(engine, add_session, clock):
    assert engine.behavior.get_profile("nobody") is None
    daily_sessions(add_session, clock, "u1")
    assert engine.store.get_profile("u1") is None
    assert engine.behavior.get_profile("u1").total_games == 12


def test_sweep_and_high_risk_listing(engine, add_session, clock):
    daily_sessions(add_session, clock, "clean")
    bot_history(add_session)
    daily_sessions(add_session, clock, "newbie", days=3)

    assert engine.behavior.sweep() == 2
    assert [p.user_id for p in engine.behavior.high_risk_users()] == ["bot"]
    assert len(engine.behavior.high_risk_users(min_score=0)) == 2


# ============================================================
# PER-SESSION CHECK
# ============================================================

def test_fast_responses_alone_do_not_flag(engine):
    check = engine.behavior.analyze_session("u1", [900, 1000, 1100, 3000], 4)
    assert check.suspicious
    assert [w["type"] for w in check.warnings] == ["multiple_fast_responses"]
    assert not check.should_flag


def test_fast_and_outperforming_session_flags(engine, add_session, clock):
    daily_sessions(add_session, clock, "u1")
    check = engine.behavior.analyze_session("u1", [900, 1000, 1100], 12)
    assert [w["type"] for w in check.warnings] == ["multiple_fast_responses", "unusual_performance"]
    assert check.should_flag


def test_normal_session_has_no_warnings(engine, add_session, clock):
    daily_sessions(add_session, clock, "u1")
    check = engine.behavior.analyze_session("u1", [3000, 4000, 5000], 6)
    assert not check.suspicious
    assert check.warnings == []
