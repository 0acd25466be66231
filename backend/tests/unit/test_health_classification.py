"""
Unit tests for per-university and system health classification.
"""

from datetime import datetime

from stellarrec.domain.health import (
    AlertLevel,
    SystemHealth,
    UniversityHealth,
    classify_system,
    classify_university,
    success_rate,
)


NOW = datetime(2026, 3, 1, 12, 0, 0)


class TestSuccessRate:

    def test_zero_attempts_is_zero_not_nan(self):
        assert success_rate(0, 0) == 0.0

    def test_percentage(self):
        assert success_rate(3, 1) == 75.0


class TestUniversityClassification:
    """Three-tier per-university status."""

    def test_failure_dominant_window_is_down(self):
        # 12 attempts, 10 failed
        assert classify_university(2, 10, 0.0) == UniversityHealth.DOWN

    def test_all_failures_over_min_attempts_is_down(self):
        assert classify_university(0, 5, 0.0) == UniversityHealth.DOWN

    def test_quiet_university_is_never_down(self):
        assert classify_university(0, 4, 0.0) == UniversityHealth.DEGRADED

    def test_min_attempts_for_down_is_configurable(self):
        assert classify_university(0, 3, 0.0, min_attempts_for_down=3) == UniversityHealth.DOWN

    def test_low_success_rate_is_degraded(self):
        assert classify_university(7, 3, 0.0) == UniversityHealth.DEGRADED

    def test_slow_confirmations_are_degraded(self):
        assert classify_university(10, 0, 301.0) == UniversityHealth.DEGRADED

    def test_healthy(self):
        assert classify_university(9, 1, 120.0) == UniversityHealth.HEALTHY

    def test_no_attempts_is_healthy(self):
        assert classify_university(0, 0, 0.0) == UniversityHealth.HEALTHY


class TestSystemClassification:
    """Overall status plus explanatory alerts."""

    def test_idle_system_is_healthy(self):
        status, alerts = classify_system(0, 0, 0, 0.0, NOW)

        assert status == SystemHealth.HEALTHY
        assert alerts == []

    def test_success_rate_below_critical(self):
        status, alerts = classify_system(0, 7, 3, 0.0, NOW)

        assert status == SystemHealth.CRITICAL
        assert [alert.level for alert in alerts] == [AlertLevel.ERROR]
        assert "70.0%" in alerts[0].message

    def test_success_rate_between_thresholds_warns(self):
        status, alerts = classify_system(0, 85, 15, 0.0, NOW)

        assert status == SystemHealth.WARNING
        assert alerts[0].level == AlertLevel.WARNING

    def test_backlog_over_critical(self):
        status, alerts = classify_system(101, 10, 0, 0.0, NOW)

        assert status == SystemHealth.CRITICAL
        assert "101" in alerts[0].message

    def test_backlog_at_critical_threshold_only_warns(self):
        status, _ = classify_system(100, 10, 0, 0.0, NOW)
        assert status == SystemHealth.WARNING

    def test_slow_processing_warns(self):
        status, alerts = classify_system(0, 10, 0, 400.0, NOW)

        assert status == SystemHealth.WARNING
        assert "400 seconds" in alerts[0].message

    def test_custom_thresholds(self):
        status, _ = classify_system(
            30, 10, 0, 0.0, NOW, backlog_warning=10, backlog_critical=20
        )
        assert status == SystemHealth.CRITICAL

    def test_alerts_carry_timestamp(self):
        _, alerts = classify_system(500, 0, 0, 0.0, NOW)
        assert alerts[0].timestamp == NOW
