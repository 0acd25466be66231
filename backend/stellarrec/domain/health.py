"""
Health Domain Models

Read models produced by the analytics aggregator and the pure
classification rules that turn raw counts into health tiers.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class UniversityHealth(str, Enum):
    """Per-university delivery health tier."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


class SystemHealth(str, Enum):
    """Overall system health tier."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


SYSTEM_HEALTH_RANK = {
    SystemHealth.HEALTHY: 0,
    SystemHealth.WARNING: 1,
    SystemHealth.CRITICAL: 2,
}


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# Classification thresholds for per-university performance
UNIVERSITY_HEALTHY_SUCCESS_RATE = 80.0
UNIVERSITY_DOWN_SUCCESS_RATE = 50.0
UNIVERSITY_DOWN_MIN_FAILURES = 10
UNIVERSITY_DOWN_MIN_ATTEMPTS = 5
UNIVERSITY_LATENCY_LIMIT_SECONDS = 300.0


# =============================================================================
# Read Models
# =============================================================================

class HealthAlert(BaseModel):
    """Ad-hoc alert derived from a threshold breach (not persisted)."""
    level: AlertLevel
    message: str
    timestamp: datetime


class UniversityPerformance(BaseModel):
    """Windowed delivery performance for one university."""
    university_id: UUID
    attempts: int
    successes: int
    failures: int
    success_rate: float
    avg_processing_time: float
    status: UniversityHealth


class HealthSnapshot(BaseModel):
    """Rolling health metrics over a trailing window."""
    window_minutes: int
    generated_at: datetime
    successes: int
    failures: int
    success_rate: float
    failure_rate: float
    queue_backlog: int
    avg_processing_time: float
    status: SystemHealth
    per_university: List[UniversityPerformance] = Field(default_factory=list)
    alerts: List[HealthAlert] = Field(default_factory=list)

    @property
    def attempts(self) -> int:
        return self.successes + self.failures


# =============================================================================
# Classification Rules
# =============================================================================

def success_rate(successes: int, failures: int) -> float:
    """Percentage of successful attempts; 0 when there were no attempts."""
    attempts = successes + failures
    if attempts <= 0:
        return 0.0
    return successes / attempts * 100


def classify_university(
    successes: int,
    failures: int,
    avg_processing_time: float,
    min_attempts_for_down: int = UNIVERSITY_DOWN_MIN_ATTEMPTS,
) -> UniversityHealth:
    """
    Three-tier per-university classification.

    ``down`` needs either a failure-dominant window with at least ten failures
    or a run of attempts with no success at all; a quiet university with
    fewer than ``min_attempts_for_down`` attempts is never reported down.
    """
    attempts = successes + failures
    rate = success_rate(successes, failures)

    if rate < UNIVERSITY_DOWN_SUCCESS_RATE and failures >= UNIVERSITY_DOWN_MIN_FAILURES:
        return UniversityHealth.DOWN
    if successes == 0 and attempts >= min_attempts_for_down:
        return UniversityHealth.DOWN
    if attempts > 0 and rate < UNIVERSITY_HEALTHY_SUCCESS_RATE:
        return UniversityHealth.DEGRADED
    if avg_processing_time > UNIVERSITY_LATENCY_LIMIT_SECONDS:
        return UniversityHealth.DEGRADED
    return UniversityHealth.HEALTHY


def classify_system(
    queue_backlog: int,
    successes: int,
    failures: int,
    avg_processing_time: float,
    now: datetime,
    backlog_warning: int = 50,
    backlog_critical: int = 100,
    success_rate_warning: float = 90.0,
    success_rate_critical: float = 80.0,
    latency_warning: float = 300.0,
    window_minutes: Optional[int] = None,
) -> tuple[SystemHealth, List[HealthAlert]]:
    """
    Overall health plus the alerts that explain it.

    Success-rate checks only apply when the window saw at least one attempt,
    so an idle system is healthy rather than critical.
    """
    alerts: List[HealthAlert] = []
    window = f"in the last {window_minutes} minutes" if window_minutes else "in the window"

    if successes + failures > 0:
        rate = success_rate(successes, failures)
        if rate < success_rate_critical:
            alerts.append(HealthAlert(
                level=AlertLevel.ERROR,
                message=f"Low success rate: {rate:.1f}% {window}",
                timestamp=now,
            ))
        elif rate < success_rate_warning:
            alerts.append(HealthAlert(
                level=AlertLevel.WARNING,
                message=f"Success rate below target: {rate:.1f}% {window}",
                timestamp=now,
            ))

    if avg_processing_time > latency_warning:
        alerts.append(HealthAlert(
            level=AlertLevel.WARNING,
            message=f"High processing time: {round(avg_processing_time)} seconds average",
            timestamp=now,
        ))

    if queue_backlog > backlog_critical:
        alerts.append(HealthAlert(
            level=AlertLevel.ERROR,
            message=f"High queue backlog: {queue_backlog} submissions awaiting delivery",
            timestamp=now,
        ))
    elif queue_backlog > backlog_warning:
        alerts.append(HealthAlert(
            level=AlertLevel.WARNING,
            message=f"Queue backlog building: {queue_backlog} submissions awaiting delivery",
            timestamp=now,
        ))

    if any(alert.level == AlertLevel.ERROR for alert in alerts):
        return SystemHealth.CRITICAL, alerts
    if any(alert.level == AlertLevel.WARNING for alert in alerts):
        return SystemHealth.WARNING, alerts
    return SystemHealth.HEALTHY, alerts
