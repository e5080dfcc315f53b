"""Alert delivery for dependency violations."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from ..models import ViolationSeverity

if TYPE_CHECKING:
    from .violation_detector import DependencyViolation

logger = logging.getLogger(__name__)


@dataclass
class ViolationAlert:
    node_id: str                     # successor affected by the violations
    violations: List["DependencyViolation"] = field(default_factory=list)
    created_at: Optional[datetime] = None

    @property
    def severity(self) -> ViolationSeverity:
        return max((v.severity for v in self.violations), key=lambda s: s.rank)


class Notifier(ABC):
    """External notification collaborator (email, chat, in-app...)."""

    @abstractmethod
    def notify(self, alert: ViolationAlert) -> None:
        ...


class LoggingNotifier(Notifier):
    """Default notifier: writes alerts to the log."""

    def notify(self, alert: ViolationAlert) -> None:
        descriptions = "; ".join(v.description for v in alert.violations)
        logger.warning(
            f"[{alert.severity.value}] {len(alert.violations)} dependency violation(s) "
            f"affecting {alert.node_id}: {descriptions}"
        )


class RecordingNotifier(Notifier):
    """Keeps alerts in memory (tests, dashboards)."""

    def __init__(self):
        self.alerts: List[ViolationAlert] = []

    def notify(self, alert: ViolationAlert) -> None:
        self.alerts.append(alert)

