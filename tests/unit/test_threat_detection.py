"""
Unit tests for pattern-based threat detection and burst tracking.
"""

from datetime import timedelta

import pytest

from aegis.services.security_events import EventOrigin, EventType, SecurityLevel
from aegis.services.threat_detection import SuspiciousActivityTracker, ThreatDetector
from aegis.services.threat_patterns import DEFAULT_THREAT_PATTERNS
from tests.helpers import at, make_event


@pytest.mark.unit
class TestThreatDetector:
    """Test suite for ThreatDetector."""

    @pytest.fixture
    def detector(self):
        return ThreatDetector(DEFAULT_THREAT_PATTERNS)

    def _threat_types(self, findings):
        return [finding.details["threat_type"] for finding in findings]

    def test_sql_injection_produces_derived_high_event(self, detector):
        event = make_event(details={"query": "1 UNION SELECT password FROM users"}, user_id="7")
        event.id = "evt-1"

        findings = detector.inspect(event)

        assert self._threat_types(findings) == ["SQL Injection"]
        finding = findings[0]
        assert finding.type is EventType.SUSPICIOUS_ACTIVITY
        assert finding.severity is SecurityLevel.HIGH
        assert finding.origin is EventOrigin.DERIVED
        assert finding.ip == event.ip
        assert finding.user_id == "7"
        assert finding.details["original_event"] == "evt-1"
        assert finding.details["detected_pattern"]

    @pytest.mark.parametrize(
        "payload,threat_type",
        [
            ("' OR '1'='1", "SQL Injection"),
            ("'; DROP TABLE users; --", "SQL Injection"),
            ("<script>alert(1)</script>", "XSS Attempt"),
            ("<img src=x onerror=alert(1)>", "XSS Attempt"),
            ("../../etc/passwd", "Directory Traversal"),
            ("%2e%2e%2fetc", "Directory Traversal"),
            ("x; cat /etc/shadow", "Command Injection"),
            ("$(whoami)", "Command Injection"),
            ("sqlmap/1.7.2#stable (https://sqlmap.org)", "Scanner User Agent"),
            ("Mozilla/5.0 Nikto/2.1.6", "Scanner User Agent"),
        ],
    )
    def test_patterns(self, detector, payload, threat_type):
        findings = detector.inspect(make_event(details={"input": payload}))

        assert threat_type in self._threat_types(findings)

    @pytest.mark.parametrize(
        "payload",
        [
            "hello world",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36",
            "user@example.com",
            "select your plan",
        ],
    )
    def test_benign_details_do_not_match(self, detector, payload):
        assert detector.inspect(make_event(details={"input": payload})) == []

    def test_findings_follow_pattern_order(self, detector):
        event = make_event(details={"a": "<script>", "b": "1 union select 2"})

        assert self._threat_types(detector.inspect(event)) == ["SQL Injection", "XSS Attempt"]

    def test_derived_events_are_never_inspected(self, detector):
        event = make_event(
            details={"input": "<script>alert(1)</script>"},
            origin=EventOrigin.DERIVED,
        )

        assert detector.inspect(event) == []

    def test_suspicious_events_are_never_inspected(self, detector):
        event = make_event(
            EventType.SUSPICIOUS_ACTIVITY,
            SecurityLevel.MEDIUM,
            details={"input": "1 UNION SELECT 2"},
        )

        assert detector.inspect(event) == []

    def test_findings_do_not_trigger_further_findings(self, detector):
        findings = detector.inspect(make_event(details={"input": "<script>"}))

        for finding in findings:
            assert detector.inspect(finding) == []

    def test_unserializable_details_are_treated_as_no_match(self, detector):
        details = {"input": "<script>"}
        details["self"] = details

        assert detector.inspect(make_event(details=details)) == []


@pytest.mark.unit
class TestSuspiciousActivityTracker:
    """Test suite for SuspiciousActivityTracker."""

    @pytest.fixture
    def tracker(self):
        return SuspiciousActivityTracker(threshold=3, window_seconds=60, ttl_seconds=3600)

    def test_only_the_crossing_request_escalates(self, tracker):
        results = [tracker.observe("10.0.0.1", "curl", "/api/items", at(i)) for i in range(6)]

        assert results == [False, False, False, True, False, False]

    def test_window_restarts(self, tracker):
        for i in range(3):
            tracker.observe("10.0.0.1", "curl", "/api/items", at(i))

        assert tracker.observe("10.0.0.1", "curl", "/api/items", at(61)) is False
        assert tracker.records()[0].attempts == 4

    def test_endpoints_are_tracked_separately(self, tracker):
        for i in range(3):
            tracker.observe("10.0.0.1", "curl", "/api/a", at(i))

        assert tracker.observe("10.0.0.1", "curl", "/api/b", at(3)) is False
        assert len(tracker) == 2

    def test_records_are_most_recent_first(self, tracker):
        tracker.observe("10.0.0.1", "curl", "/api/a", at(0))
        tracker.observe("10.0.0.2", "curl", "/api/a", at(5))

        records = tracker.records()
        assert [record.ip for record in records] == ["10.0.0.2", "10.0.0.1"]
        assert tracker.records(limit=1)[0].ip == "10.0.0.2"
        assert records[0].to_dict()["endpoint"] == "/api/a"

    def test_cleanup_drops_stale_records(self, tracker):
        tracker.observe("10.0.0.1", "curl", "/api/a", at(0))
        tracker.observe("10.0.0.2", "curl", "/api/a", at(3000))

        removed = tracker.cleanup(at(0) + timedelta(seconds=3601))

        assert removed == 1
        assert [record.ip for record in tracker.records()] == ["10.0.0.2"]

    def test_forget(self, tracker):
        tracker.observe("10.0.0.1", "curl", "/api/a", at(0))
        tracker.observe("10.0.0.1", "curl", "/api/b", at(0))
        tracker.observe("10.0.0.2", "curl", "/api/a", at(0))

        assert tracker.forget("10.0.0.1") == 2
        assert len(tracker) == 1
