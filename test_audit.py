"""
AUDIT & ALERT BOOK TESTS
"""

from datetime import timedelta

from fairplay.audit import AuditEventType
from fairplay.models import AlertStatus, Severity


def test_session_report(engine, clock):
    engine.start_session("s1", "u1")
    engine.answer_given("s1", "u1", 1, correct=True, response_time_ms=3000)
    clock.advance(seconds=30)
    engine.question_timed_out("s1", "u1", 2)
    challenge = engine.maybe_challenge("s1", "u1", 8, shown=[])
    engine.submit_challenge("s1", "u1", 8, challenge.answer, 2500)
    clock.advance(seconds=30)
    engine.end_session("s1", "u1", highest_question=8)

    report = engine.audit.session_report("s1")

    assert report["user_id"] == "u1"
    assert report["duration_seconds"] == 60
    assert report["timeouts"] == 1
    assert report["captcha"] == {"shown": 1, "passed": 1, "failed": 0, "timed_out": 0}
    assert report["answers"] == 1
    assert report["flagged"] is False
    assert engine.audit.session_report("unknown") is None


def test_user_trail_window(engine, clock):
    engine.audit.log_event("s1", "u1", AuditEventType.GAME_START)
    clock.advance(hours=2)
    engine.audit.log_event("s2", "u1", AuditEventType.GAME_START)
    engine.audit.log_event("s3", "u2", AuditEventType.GAME_START)

    assert [e.session_id for e in engine.audit.user_trail("u1")] == ["s1", "s2"]
    recent = engine.audit.user_trail("u1", start=clock() - timedelta(hours=1))
    assert [e.session_id for e in recent] == ["s2"]


def test_audit_writes_never_raise(engine):
    engine.store.offline = True
    assert engine.audit.log_event("s1", "u1", AuditEventType.TIMEOUT) is False
    assert engine.audit.session_trail("s1") == []


def test_cleanup_drops_old_events(engine, clock):
    engine.audit.log_event("old", "u1", AuditEventType.GAME_START)
    clock.advance(days=8)
    engine.audit.log_event("new", "u1", AuditEventType.GAME_START)
    assert engine.audit.cleanup() == 1
    assert engine.audit.session_trail("old") == []


# ============================================================
# ALERT BOOK
# ============================================================

def test_alerts_listed_by_severity(engine, clock):
    engine.alerts.raise_alert("u1", "vpn_usage", Severity.LOW, "low")
    engine.alerts.raise_alert("u2", "behavioral_anomaly", Severity.CRITICAL, "critical")
    clock.advance(minutes=1)
    engine.alerts.raise_alert("u3", "multi_account", Severity.MEDIUM, "older medium")
    clock.advance(minutes=1)
    engine.alerts.raise_alert("u4", "multi_account", Severity.MEDIUM, "newer medium")

    listed = engine.alerts.list_alerts()
    assert [a.description for a in listed] == ["critical", "newer medium", "older medium", "low"]
    assert [a.user_id for a in engine.alerts.list_alerts(severity="medium")] == ["u4", "u3"]


def test_resolved_alerts_leave_the_queue(engine):
    alert = engine.alerts.raise_alert("u1", "vpn_usage", Severity.LOW, "vpn").value
    resolved = engine.alerts.resolve(alert.id, "admin-1", "known office")

    assert resolved.status == AlertStatus.RESOLVED
    assert resolved.resolution_notes == "known office"
    assert engine.alerts.list_alerts() == []
    assert len(engine.alerts.list_alerts(status="resolved")) == 1
    assert engine.alerts.resolve(999, "admin-1") is None


def test_failing_listener_does_not_block_alert(engine):
    seen = []

    def broken(alert):
        raise RuntimeError("webhook down")

    engine.alerts.subscribe(broken)
    engine.alerts.subscribe(seen.append)

    assert engine.alerts.raise_alert("u1", "vpn_usage", Severity.LOW, "vpn").ok
    assert [a.alert_type for a in seen] == ["vpn_usage"]


def test_fraud_flag_is_audited(engine):
    engine.alerts.flag_for_review("u1", "manual", session_id="s9")
    events = engine.audit.session_trail("s9")
    assert [e.event_type for e in events] == [AuditEventType.FRAUD_FLAG.value]
    assert events[0].event_data["fraud_flags"] == 1
