"""
SESSION TELEMETRY TESTS
Response buffer, fast-answer escalation, finalization and rate limits.
"""

from datetime import timedelta

from fairplay.models import Severity


def test_suspicious_session_is_flagged_and_alerted(engine):
    """Six sub-floor answers: suspicious summary plus a high-severity alert."""
    times = [900, 950, 1000, 1100, 1050, 980]
    for q, t in enumerate(times, 1):
        assert engine.telemetry.record_answer("sess-d", "user-d", q, t).ok

    summary = engine.telemetry.finalize_session("sess-d", "user-d")

    assert summary.is_suspicious
    assert summary.fast_answers == 6
    assert summary.fastest_response_ms == 900
    assert summary.avg_response_ms == round(sum(times) / len(times))

    alerts = engine.alerts.alerts_for_user("user-d")
    assert [a.alert_type for a in alerts] == ["suspicious_session"]
    assert alerts[0].severity == Severity.HIGH
    assert alerts[0].evidence[0].kind == "session"

    record = engine.store.get_session("sess-d")
    assert record.suspicious
    assert record.avg_response_time_ms == summary.avg_response_ms


def test_fast_answer_counter_flags_at_fifth_event(engine):
    for q in range(1, 5):
        engine.telemetry.record_answer("s1", "u1", q, 800)
    assert engine.store.load_counters("u1").fraud_flags == 0

    engine.telemetry.record_answer("s1", "u1", 5, 800)
    assert engine.store.load_counters("u1").fraud_flags == 1
    assert engine.ephemeral.ttl("fast_responses:u1") <= 86400


def test_fast_answer_counter_window_expires(engine, clock):
    for q in range(1, 5):
        engine.telemetry.record_answer("s1", "u1", q, 800)
    clock.advance(hours=25)
    engine.telemetry.record_answer("s2", "u1", 1, 800)
    assert engine.store.load_counters("u1").fraud_flags == 0


def test_normal_session_is_not_suspicious(engine):
    for q, t in enumerate([4200, 3900, 5100, 2800], 1):
        engine.telemetry.record_answer("s-ok", "u-ok", q, t)
    summary = engine.telemetry.finalize_session("s-ok", "u-ok")
    assert not summary.is_suspicious
    assert engine.alerts.alerts_for_user("u-ok") == []


def test_finalize_is_idempotent(engine):
    engine.telemetry.record_answer("s1", "u1", 1, 3000)
    assert engine.telemetry.finalize_session("s1", "u1") is not None
    assert engine.telemetry.finalize_session("s1", "u1") is None
    assert engine.telemetry.finalize_session("never-started", "u1") is None


def test_buffer_expires_after_an_hour(engine, clock):
    engine.telemetry.record_answer("s1", "u1", 1, 3000)
    clock.advance(seconds=3601)
    assert engine.telemetry.finalize_session("s1", "u1") is None


def test_question_start_marker_ttl(engine, clock):
    assert engine.telemetry.record_question_start("s1", 3).ok
    clock.advance(seconds=4)
    assert engine.telemetry.elapsed_ms("s1", 3) == 4000
    clock.advance(seconds=57)
    assert engine.telemetry.question_start_time("s1", 3) is None


def test_unreachable_keyspace_never_raises(engine):
    engine.ephemeral.offline = True
    assert not engine.telemetry.record_question_start("s1", 1).ok
    assert not engine.telemetry.record_answer("s1", "u1", 1, 500).ok
    assert engine.telemetry.finalize_session("s1", "u1") is None


def test_failed_persist_keeps_buffer_for_retry(engine):
    engine.telemetry.record_answer("s1", "u1", 1, 3000)
    engine.store.offline = True
    summary = engine.telemetry.finalize_session("s1", "u1")
    engine.store.offline = False

    assert summary is not None
    assert engine.telemetry.response_times("s1") == [3000]
    assert engine.telemetry.finalize_session("s1", "u1") is not None


def test_game_rate_limit(engine):
    results = [engine.telemetry.check_game_rate_limit("u1") for _ in range(16)]
    assert all(r.allowed for r in results[:15])
    assert not results[15].allowed
    assert "15" in results[15].message


def test_game_rate_limit_fails_open(engine):
    engine.ephemeral.offline = True
    assert engine.telemetry.check_game_rate_limit("u1").allowed


def test_perfect_games_flag_user(engine, add_session, clock):
    for _ in range(3):
        add_session("champ", clock() - timedelta(hours=1),
                    status="won", score=50000, highest_question=15)
    check = engine.telemetry.check_perfect_game_limit("champ")
    assert check.suspicious
    assert check.count == 3
    assert engine.store.load_counters("champ").fraud_flags == 1
