"""
CORRELATION TESTS
Fingerprints, shared-device and shared-IP links, network hygiene alerts.
"""

from datetime import timedelta

import pytest

from fairplay.correlation import classify_ip, fingerprint, normalize_identifier
from fairplay.models import LinkType, Severity


def observe_phone(engine, user_id):
    return engine.observe_device(user_id, "whatsapp", "+1 (555) 010-2030",
                                 device_type="android", os_version="14", app_version="2.24")


# ============================================================
# FINGERPRINTS
# ============================================================

def test_fingerprint_is_deterministic():
    a = fingerprint("whatsapp", "+1 555 0102", "android", "14", "2.24")
    b = fingerprint("whatsapp", "+1 555 0102", "android", "14", "2.24")
    assert a == b
    assert len(a) == 32
    assert fingerprint("telegram", "+1 555 0102", "android", "14", "2.24") != a


def test_identifier_normalization():
    assert normalize_identifier("  +1 (555) 123-4567 ") == "15551234567"
    assert normalize_identifier(None) == ""
    assert fingerprint("whatsapp", "+1 (555) 123-4567") == fingerprint("whatsapp", "15551234567")


def test_missing_fields_default_to_unknown():
    assert fingerprint(None, None) == fingerprint("unknown", "unknown")


@pytest.mark.parametrize("address,proxy", [
    ("8.8.8.8", False),
    ("192.168.1.10", True),
    ("10.0.0.1", True),
    ("127.0.0.1", True),
    ("100.64.1.1", True),
    ("::1", True),
])
def test_classify_ip(address, proxy):
    flags = classify_ip(address)
    assert flags["is_proxy"] is proxy
    assert flags["is_vpn"] is False
    assert flags["reason"] == ("private_ip_range" if proxy else None)


def test_classify_ip_rejects_garbage():
    with pytest.raises(ValueError):
        classify_ip("not-an-ip")


# ============================================================
# SHARED DEVICE
# ============================================================

def test_three_accounts_on_one_device(engine):
    for uid in ("u1", "u2", "u3"):
        assert observe_phone(engine, uid).ok

    for uid in ("u1", "u2", "u3"):
        links = engine.correlation.linked_accounts(uid)
        assert len(links) == 2
        assert all(l.link_type == LinkType.SAME_DEVICE for l in links)
        assert all(l.confidence == 0.9 for l in links)
        assert {l.other(uid) for l in links} == {"u1", "u2", "u3"} - {uid}
        assert engine.store.load_counters(uid).multi_account_flags >= 1

    assert all(d.is_flagged for d in engine.store.all_devices())
    shared = engine.correlation.shared_device_users()
    assert len(shared) == 1
    assert shared[0]["user_ids"] == ["u1", "u2", "u3"]


def test_single_device_owner_is_not_linked(engine):
    observe_phone(engine, "solo")
    observe_phone(engine, "solo")
    assert engine.correlation.linked_accounts("solo") == []
    assert engine.store.load_counters("solo").multi_account_flags == 0
    assert len(engine.correlation.user_devices("solo")) == 1


def test_device_observation_survives_outage(engine):
    engine.store.offline = True
    assert not observe_phone(engine, "u1").ok


# ============================================================
# LINK MERGING
# ============================================================

def test_confidence_only_rises_through_merges(engine):
    first = engine.store.merge_link("b", "a", LinkType.SAME_IP, 0.7, [])
    again = engine.store.merge_link("a", "b", LinkType.SAME_IP, 0.4, [])
    assert again.id == first.id
    assert (again.user_id_1, again.user_id_2) == ("a", "b")
    assert again.confidence == 0.7


def test_admin_override_may_lower_confidence(engine):
    link = engine.store.merge_link("a", "b", LinkType.SAME_DEVICE, 0.9, [])
    lowered = engine.correlation.override_link_confidence(link.id, 0.2, "admin-1")
    assert lowered.confidence == 0.2
    assert engine.store.admin_activity_for(str(link.id))[0]["action_type"] == "override_link_confidence"
    with pytest.raises(ValueError):
        engine.correlation.override_link_confidence(link.id, 1.5, "admin-1")


def test_review_link_confirmation_flags_both_users(engine):
    observe_phone(engine, "u1")
    observe_phone(engine, "u2")
    link = engine.correlation.linked_accounts("u1")[0]

    reviewed = engine.correlation.review_link(link.id, "admin-1", confirmed=True)

    assert reviewed.is_confirmed is True
    assert reviewed.reviewed_by == "admin-1"
    assert engine.store.load_counters("u1").fraud_flags == 1
    assert engine.store.load_counters("u2").fraud_flags == 1


def test_denied_link_flags_nobody(engine):
    observe_phone(engine, "u1")
    observe_phone(engine, "u2")
    link = engine.correlation.linked_accounts("u1")[0]
    engine.correlation.review_link(link.id, "admin-1", confirmed=False)
    assert engine.store.load_counters("u1").fraud_flags == 0
    assert engine.correlation.review_link(999, "admin-1", confirmed=True) is None


# ============================================================
# SHARED IP
# ============================================================

def test_shared_ip_creates_weak_link(engine):
    engine.observe_ip("u1", "8.8.8.8")
    engine.observe_ip("u2", "8.8.8.8")
    links = engine.correlation.linked_accounts("u2")
    assert len(links) == 1
    assert links[0].link_type == LinkType.SAME_IP
    assert links[0].confidence == 0.4
    assert links[0].evidence[0].time_overlap is False


def test_overlapping_sessions_strengthen_ip_link(engine, add_session, clock):
    add_session("u1", clock() - timedelta(hours=2))
    add_session("u2", clock() - timedelta(hours=2) + timedelta(minutes=2))
    engine.observe_ip("u1", "8.8.8.8")
    engine.observe_ip("u2", "8.8.8.8")
    assert engine.correlation.linked_accounts("u2")[0].confidence == 0.7


def test_old_ip_logs_are_ignored(engine, clock):
    engine.observe_ip("u1", "8.8.8.8")
    clock.advance(days=8)
    engine.observe_ip("u2", "8.8.8.8")
    assert engine.correlation.linked_accounts("u2") == []


def test_many_accounts_on_one_ip_raise_alert(engine):
    for uid in ("u1", "u2"):
        engine.observe_ip(uid, "8.8.4.4")
    assert engine.alerts.alerts_for_user("u2") == []

    engine.observe_ip("u3", "8.8.4.4")

    alerts = engine.alerts.alerts_for_user("u3")
    assert [a.alert_type for a in alerts] == ["multi_account"]
    assert alerts[0].severity == Severity.MEDIUM
    assert alerts[0].evidence[0].linked_users == ["u1", "u2"]
    assert "(3)" in alerts[0].description


def test_private_address_raises_low_alert(engine):
    outcome = engine.observe_ip("u1", "192.168.0.7")
    assert outcome.ok and outcome.value.is_proxy
    alerts = engine.alerts.alerts_for_user("u1")
    assert [(a.alert_type, a.severity) for a in alerts] == [("vpn_usage", Severity.LOW)]
    assert alerts[0].evidence[0].kind == "network"


def test_invalid_address_is_skipped(engine):
    outcome = engine.observe_ip("u1", "999.1.1.1")
    assert not outcome.ok
    assert engine.correlation.user_ips("u1") == []


def test_user_ips_are_aggregated(engine, clock):
    engine.observe_ip("u1", "8.8.8.8")
    clock.advance(minutes=5)
    engine.observe_ip("u1", "8.8.8.8", action="answer")
    engine.observe_ip("u1", "1.1.1.1")

    rows = engine.correlation.user_ips("u1")
    by_ip = {r["ip_address"]: r for r in rows}
    assert by_ip["8.8.8.8"]["usage_count"] == 2
    assert by_ip["1.1.1.1"]["usage_count"] == 1
    assert not by_ip["8.8.8.8"]["has_proxy"]


def test_strongest_link_listed_first(engine):
    observe_phone(engine, "u1")
    observe_phone(engine, "u2")
    engine.observe_ip("u1", "8.8.8.8")
    engine.observe_ip("u3", "8.8.8.8")
    links = engine.correlation.linked_accounts("u1")
    assert [l.confidence for l in links] == [0.9, 0.4]
