"""
SLA Tracking Module

Computes SLA levels for workflow instances from their due date.

Levels:
- on_track: less than the warning threshold (default 80%) of time used
- warning: warning threshold reached
- breached: past due
- critical: critical threshold (default 24 hours) or more past due

Levels map onto the stored SlaStatus: on_track -> ON_TRACK,
warning -> WARNING, breached/critical -> OVERDUE.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from .config import WorkflowSettings, get_config
from .models import SlaConfig, SlaStatus, WorkflowInstance, WorkflowTemplate, Stage


class SlaLevel(Enum):
    """Fine-grained SLA level"""
    ON_TRACK = "on_track"
    WARNING = "warning"
    BREACHED = "breached"
    CRITICAL = "critical"

    @property
    def sla_status(self) -> SlaStatus:
        if self == SlaLevel.ON_TRACK:
            return SlaStatus.ON_TRACK
        if self == SlaLevel.WARNING:
            return SlaStatus.WARNING
        return SlaStatus.OVERDUE


_SEVERITY = {SlaStatus.ON_TRACK: 0, SlaStatus.WARNING: 1, SlaStatus.OVERDUE: 2}

_STORED_LEVEL = {
    SlaStatus.ON_TRACK: SlaLevel.ON_TRACK,
    SlaStatus.WARNING: SlaLevel.WARNING,
    SlaStatus.OVERDUE: SlaLevel.BREACHED,
}


@dataclass
class SlaCalculation:
    """Result of an SLA calculation"""
    level: SlaLevel
    due_date: Optional[datetime]
    remaining_hours: Optional[float]
    percent_used: float

    @property
    def sla_status(self) -> SlaStatus:
        return self.level.sla_status


def is_escalation(previous: SlaStatus, current: SlaStatus) -> bool:
    """True when the status got worse"""
    return _SEVERITY[current] > _SEVERITY[previous]


def due_date_for_stage(template: WorkflowTemplate, stage: Optional[Stage],
                       start: datetime,
                       fallback_days: Optional[float] = None) -> Optional[datetime]:
    """Due date from the stage's sla_days, else the template default, else the fallback"""
    days = None
    if stage is not None and stage.sla_days:
        days = stage.sla_days
    elif template.default_sla_days:
        days = template.default_sla_days
    elif fallback_days:
        days = fallback_days
    if not days:
        return None
    return start + timedelta(days=days)


class SlaTracker:
    """Calculates SLA levels; never persists anything itself"""

    def __init__(self, settings: Optional[WorkflowSettings] = None):
        self.settings = settings or get_config()

    def _thresholds(self, sla_config: Optional[SlaConfig]):
        warning = self.settings.sla_warning_threshold_percent
        critical = self.settings.sla_critical_threshold_hours
        if sla_config is not None:
            if sla_config.warning_threshold_percent is not None:
                warning = sla_config.warning_threshold_percent
            if sla_config.critical_threshold_hours is not None:
                critical = sla_config.critical_threshold_hours
        return warning, critical

    def calculate(self, due_date: Optional[datetime], started_at: Optional[datetime],
                  now: Optional[datetime] = None,
                  sla_config: Optional[SlaConfig] = None) -> SlaCalculation:
        """
        Calculate the SLA level at ``now``.

        Args:
            due_date: When the SLA expires; None means no SLA (always on track)
            started_at: When the SLA clock started
            now: Evaluation time, defaults to the current time
            sla_config: Template thresholds overriding configuration

        Returns:
            SlaCalculation with level, remaining hours and percentage used
        """
        if due_date is None:
            return SlaCalculation(SlaLevel.ON_TRACK, None, None, 0.0)

        now = now or datetime.now(timezone.utc)
        warning_percent, critical_hours = self._thresholds(sla_config)

        remaining_hours = (due_date - now).total_seconds() / 3600
        percent_used = 0.0
        if started_at is not None:
            total = (due_date - started_at).total_seconds()
            if total > 0:
                elapsed = (now - started_at).total_seconds()
                percent_used = min(200.0, max(0.0, elapsed / total * 100))
            else:
                percent_used = 100.0

        if remaining_hours <= -critical_hours:
            level = SlaLevel.CRITICAL
        elif remaining_hours <= 0:
            level = SlaLevel.BREACHED
        elif percent_used >= warning_percent:
            level = SlaLevel.WARNING
        else:
            level = SlaLevel.ON_TRACK

        return SlaCalculation(level, due_date, remaining_hours, percent_used)

    def calculate_for_instance(self, instance: WorkflowInstance, template: Optional[WorkflowTemplate],
                               now: Optional[datetime] = None) -> SlaCalculation:
        """
        Calculate the SLA level of an instance.

        A paused instance is evaluated at the moment it was paused; a
        terminal instance keeps its stored status.
        """
        if instance.is_terminal:
            return SlaCalculation(_STORED_LEVEL[instance.sla_status], instance.due_date, None, 0.0)
        at = instance.paused_at or now or datetime.now(timezone.utc)
        return self.calculate(
            instance.due_date,
            instance.sla_started_at,
            at,
            template.sla_config if template else None
        )
