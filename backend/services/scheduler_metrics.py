"""
Readiness dispatcher metrics.

Simple in-memory counters exposed at /scheduler/status.
"""
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class SchedulerMetrics:
    """In-memory counters for the readiness dispatcher loop."""

    cycles_total: int = 0
    prompts_sent_total: int = 0
    reminders_sent_total: int = 0
    movement_reminders_sent_total: int = 0
    no_response_total: int = 0
    needs_reassignment_total: int = 0
    notification_failures: int = 0
    cycle_errors: int = 0
    last_cycle_duration: float | None = None
    last_heartbeat: float = field(default_factory=time.monotonic)

    def record_cycle(self, duration: float) -> None:
        self.cycles_total += 1
        self.last_cycle_duration = duration
        self.heartbeat()

    def record_prompt(self, delivered: bool) -> None:
        self.prompts_sent_total += 1
        if not delivered:
            self.notification_failures += 1

    def record_reminder(self, delivered: bool) -> None:
        self.reminders_sent_total += 1
        if not delivered:
            self.notification_failures += 1

    def record_movement_reminder(self, delivered: bool) -> None:
        self.movement_reminders_sent_total += 1
        if not delivered:
            self.notification_failures += 1

    def record_no_response(self) -> None:
        self.no_response_total += 1

    def record_needs_reassignment(self) -> None:
        self.needs_reassignment_total += 1

    def record_cycle_error(self) -> None:
        self.cycle_errors += 1

    def heartbeat(self) -> None:
        self.last_heartbeat = time.monotonic()

    def to_dict(self) -> dict:
        return {
            "cycles_total": self.cycles_total,
            "prompts_sent_total": self.prompts_sent_total,
            "reminders_sent_total": self.reminders_sent_total,
            "movement_reminders_sent_total": self.movement_reminders_sent_total,
            "no_response_total": self.no_response_total,
            "needs_reassignment_total": self.needs_reassignment_total,
            "notification_failures": self.notification_failures,
            "cycle_errors": self.cycle_errors,
            "last_cycle_seconds": (
                round(self.last_cycle_duration, 3) if self.last_cycle_duration is not None else None
            ),
            "heartbeat_age_seconds": round(time.monotonic() - self.last_heartbeat, 1),
        }


# Singleton metrics instance
_metrics: SchedulerMetrics | None = None


def get_scheduler_metrics() -> SchedulerMetrics:
    global _metrics
    if _metrics is None:
        _metrics = SchedulerMetrics()
    return _metrics
