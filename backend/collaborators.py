"""
Persistence and analytics interfaces used by the workflow.

The coordinator never assumes these succeed: every call goes through a
best-effort wrapper that logs and carries on.
"""
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from constants import FEEDBACK_CONSTANTS
from models import DoseLog, DoseSummary, LogOutcome

logger = logging.getLogger("doseflow.collaborators")

def best_effort(description: str, fn, *args, default=None, **kwargs):
    """Calls a collaborator; failures are logged and replaced by `default`."""
    try:
        return fn(*args, **kwargs)
    except Exception:
        logger.warning(f"{description} failed, continuing", exc_info=True)
        return default

class DosePersistence(ABC):
    """Where finalized doses are written.

    Implementations decide the storage; the workflow only needs the outcome
    of a write and the history used for injection-site rotation.
    """

    @abstractmethod
    def log_dose(self, summary: DoseSummary) -> LogOutcome:
        """Store a finalized dose.

        Returns:
            LogOutcome: SUCCESS, LIMIT_REACHED when the user's plan allows no
            more logs, FAILURE otherwise
        """
        pass

    @abstractmethod
    def list_prior_doses(self) -> List[DoseLog]:
        """All stored doses, newest first."""
        pass

    @abstractmethod
    def delete_dose(self, dose_id: str) -> bool:
        """Remove a stored dose.

        Returns:
            bool: True if it existed
        """
        pass

    def save_survey_response(self, responses: Dict[str, str]) -> None:
        """Optional sink for PMF survey answers. Ignored unless overridden."""
        return None

class AnalyticsSink(ABC):

    @abstractmethod
    def log_event(self, name: str, params: Optional[Dict[str, Any]] = None) -> None:
        pass

class InMemoryDoseRepository(DosePersistence):
    """Local dose log.

    Keeps the most recent `capacity` entries, oldest dropped first. A
    `log_limit` simulates a plan that stops accepting new logs.
    """

    def __init__(self, capacity: int = FEEDBACK_CONSTANTS.LOCAL_LOG_CAPACITY,
                 log_limit: Optional[int] = None, clock=datetime.now):
        self.capacity = capacity
        self.log_limit = log_limit
        self._clock = clock
        self._logs: List[DoseLog] = []
        self._accepted = 0
        self.survey_responses: List[Dict[str, str]] = []
        self._lock = threading.Lock()

    def log_dose(self, summary: DoseSummary) -> LogOutcome:
        with self._lock:
            if self.log_limit is not None and self._accepted >= self.log_limit:
                logger.info(f"Dose log limit of {self.log_limit} reached")
                return LogOutcome.LIMIT_REACHED
            entry = DoseLog(id=f"dose_log_{uuid.uuid4().hex}", timestamp=self._clock(), summary=summary)
            self._logs.insert(0, entry)
            del self._logs[self.capacity:]
            self._accepted += 1
            logger.info(f"Dose logged: {entry.id} ({summary.dose_value} {summary.dose_unit.value} "
                        f"{summary.substance_name or 'unnamed'})")
            return LogOutcome.SUCCESS

    def list_prior_doses(self) -> List[DoseLog]:
        with self._lock:
            return list(self._logs)

    def delete_dose(self, dose_id: str) -> bool:
        with self._lock:
            for i, entry in enumerate(self._logs):
                if entry.id == dose_id:
                    del self._logs[i]
                    logger.info(f"Dose log deleted: {dose_id}")
                    return True
        return False

    def save_survey_response(self, responses: Dict[str, str]) -> None:
        with self._lock:
            self.survey_responses.append(dict(responses))

    def __len__(self) -> int:
        return len(self._logs)

class InMemoryAnalytics(AnalyticsSink):
    """Records events for inspection (tests, the /health endpoint)."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def log_event(self, name: str, params: Optional[Dict[str, Any]] = None) -> None:
        self.events.append((name, dict(params or {})))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def count(self, name: str) -> int:
        return sum(1 for n, _ in self.events if n == name)

class LoggingAnalytics(AnalyticsSink):
    def __init__(self, logger_name: str = "doseflow.analytics"):
        self._logger = logging.getLogger(logger_name)

    def log_event(self, name: str, params: Optional[Dict[str, Any]] = None) -> None:
        self._logger.info(f"event={name} params={params or {}}")
