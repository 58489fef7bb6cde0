"""
DoseFlow: Data Dictionary
=========================
Every value that flows through a dose calculation and the manual-entry
workflow: the immutable request/result pair used by the engine, the syringe
definition, and the single mutable WorkflowState owned by the coordinator.

No calculation logic lives here apart from the construction-time invariants
of Instrument.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from constants import (
    CALCULATION_CONSTANTS,
    ConcentrationUnit,
    DoseUnit,
    InstrumentFamily,
)

class InstrumentConfigurationError(ValueError):
    """Raised when a marking table or syringe profile is malformed at load time."""
    pass

class UnknownInstrumentError(KeyError):
    """Raised when a (family, label) pair is not in the catalog."""
    pass

class FeedbackStageError(ValueError):
    """Raised when a feedback response does not match the current stage."""
    pass

# --- 1. ENUMS ---

class CalculationErrorKind(Enum):
    INVALID_DOSE = "invalid_dose"
    INVALID_CONCENTRATION = "invalid_concentration"
    UNIT_MISMATCH = "unit_mismatch"
    NO_MARKINGS_AVAILABLE = "no_markings_available"
    VOLUME_TOO_SMALL = "volume_too_small"
    DOSE_EXCEEDS_AVAILABLE = "dose_exceeds_available"
    VOLUME_EXCEEDS_AVAILABLE = "volume_exceeds_available"
    EXCEEDS_INSTRUMENT_CAPACITY = "exceeds_instrument_capacity"
    PRECISION_ADVISORY = "precision_advisory"  # Non-fatal

    @property
    def is_fatal(self) -> bool:
        return self is not CalculationErrorKind.PRECISION_ADVISORY

class Screen(Enum):
    INTRO = "intro"
    SCAN = "scan"
    MANUAL_ENTRY = "manual_entry"
    FEEDBACK = "feedback"

class EntryStep(Enum):
    DOSE = "dose"
    MEDICATION_SOURCE = "medication_source"
    CONCENTRATION_INPUT = "concentration_input"
    TOTAL_AMOUNT_INPUT = "total_amount_input"
    RECONSTITUTION = "reconstitution"
    INSTRUMENT = "instrument"
    PRE_CONFIRMATION = "pre_confirmation"
    RESULT = "result"

class MedicationSource(Enum):
    CONCENTRATION = "concentration"   # Label states mg/ml etc.
    TOTAL_AMOUNT = "totalAmount"      # Label states mg per vial (powder)

class EntryMode(Enum):
    MANUAL = "manual"
    SCAN = "scan"

class NextAction(Enum):
    GO_HOME = "go_home"        # Reset and idle at intro
    START_OVER = "start_over"  # Reset and repeat the last entry mode
    SCAN_AGAIN = "scan_again"  # Reset and go to capture

class Health(Enum):
    HEALTHY = "healthy"
    RECOVERING = "recovering"

class FieldName(Enum):
    """Raw fields the presentation layer may edit."""
    DOSE = "dose"
    DOSE_UNIT = "dose_unit"
    SUBSTANCE_NAME = "substance_name"
    MEDICATION_SOURCE = "medication_source"
    CONCENTRATION = "concentration"
    CONCENTRATION_UNIT = "concentration_unit"
    TOTAL_AMOUNT = "total_amount"
    SOLUTION_VOLUME = "solution_volume"
    INSTRUMENT_FAMILY = "instrument_family"
    INSTRUMENT_VOLUME = "instrument_volume"

class FeedbackStage(Enum):
    INJECTION_SITE = "injection_site"
    ORIENTATION = "orientation"
    PMF_SURVEY = "pmf_survey"
    OUTCOME_FEEDBACK = "outcome_feedback"

class OutcomeFeeling(Enum):
    GREAT = "Great"
    MILD_SIDE_EFFECTS = "Mild side effects"
    SOMETHING_WRONG = "Something felt wrong"

class LogOutcome(Enum):
    SUCCESS = "success"
    LIMIT_REACHED = "limit_reached"
    FAILURE = "failure"

# --- 2. ENGINE INPUT / OUTPUT ---

@dataclass(frozen=True)
class Instrument:
    """
    A syringe and its printed scale.
    capacity and markings are in the family's native unit
    (ml for Standard, units for Insulin).
    """
    family: InstrumentFamily
    label: str                   # e.g. "0.5 ml"
    capacity: float
    markings: Tuple[float, ...]

    def __post_init__(self):
        if not self.markings:
            raise InstrumentConfigurationError(f"{self.family.value} {self.label}: markings must not be empty")
        if any(m < 0 for m in self.markings):
            raise InstrumentConfigurationError(f"{self.family.value} {self.label}: negative marking")
        if any(b <= a for a, b in zip(self.markings, self.markings[1:])):
            raise InstrumentConfigurationError(f"{self.family.value} {self.label}: markings must be ascending and unique")
        if self.capacity <= 0:
            raise InstrumentConfigurationError(f"{self.family.value} {self.label}: capacity must be positive")
        if self.markings[-1] > self.capacity:
            raise InstrumentConfigurationError(
                f"{self.family.value} {self.label}: marking {self.markings[-1]} exceeds capacity {self.capacity}"
            )

    @property
    def units_per_ml(self) -> float:
        return CALCULATION_CONSTANTS.UNITS_PER_ML[self.family]

    @property
    def capacity_ml(self) -> float:
        return self.capacity / self.units_per_ml

    @property
    def scale_unit(self) -> str:
        return "units" if self.family == InstrumentFamily.COUNT else "ml"

@dataclass(frozen=True)
class DoseRequest:
    """One calculation attempt. Never mutated."""
    dose_value: Optional[float]
    dose_unit: DoseUnit
    concentration_unit: ConcentrationUnit
    concentration: Optional[float] = None
    total_amount: Optional[float] = None      # In concentration_unit.amount_unit
    solution_volume: Optional[float] = None   # ml of diluent (reconstitution)
    instrument: Optional[Instrument] = None

@dataclass(frozen=True)
class CalculationResult:
    computed_volume: Optional[float]          # ml
    recommended_marking: Optional[float]      # One of instrument.markings
    error: Optional[CalculationErrorKind] = None
    message: Optional[str] = None
    computed_concentration: Optional[float] = None
    scale_value: Optional[float] = None       # Exact value on the native scale
    scale_unit: Optional[str] = None

    @classmethod
    def failure(cls, kind: CalculationErrorKind, message: str,
                computed_concentration: Optional[float] = None) -> 'CalculationResult':
        return cls(
            computed_volume=None,
            recommended_marking=None,
            error=kind,
            message=message,
            computed_concentration=computed_concentration,
        )

    @property
    def is_failure(self) -> bool:
        return self.error is not None and self.error.is_fatal

    @property
    def has_advisory(self) -> bool:
        return self.error == CalculationErrorKind.PRECISION_ADVISORY

# --- 3. FEEDBACK / LOGGING ---

@dataclass(frozen=True)
class DoseSummary:
    """Finalized dose handed to the persistence collaborator."""
    substance_name: str
    dose_value: float
    dose_unit: DoseUnit
    computed_volume: float
    recommended_marking: float
    scale_unit: str
    instrument_family: InstrumentFamily
    instrument_label: str
    medication_source: Optional[MedicationSource] = None
    concentration: Optional[float] = None
    concentration_unit: Optional[ConcentrationUnit] = None
    total_amount: Optional[float] = None
    solution_volume: Optional[float] = None
    computed_concentration: Optional[float] = None
    injection_site: Optional[str] = None
    outcome: Optional[OutcomeFeeling] = None
    notes: Optional[str] = None

@dataclass(frozen=True)
class DoseLog:
    id: str
    timestamp: datetime
    summary: DoseSummary

@dataclass
class EngagementCounters:
    """
    Per-user counters that outlive a single entry session.
    Shared by every sequencer of the process; mutate only while holding lock.
    """
    session_count: int = 0
    orientation_show_count: int = 0
    orientation_suppressed: bool = False
    pmf_shown: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

@dataclass
class FeedbackContext:
    summary: DoseSummary
    next_action: NextAction
    stage: Optional[FeedbackStage] = FeedbackStage.INJECTION_SITE
    pending_stages: List[FeedbackStage] = field(default_factory=list)
    suggested_site: Optional[str] = None
    injection_site: Optional[str] = None
    outcome: Optional[OutcomeFeeling] = None
    outcome_notes: Optional[str] = None
    survey_responses: Dict[str, str] = field(default_factory=dict)
    log_outcome: Optional[LogOutcome] = None
    completed: bool = False

# --- 4. WORKFLOW STATE ---

def _initial_fields() -> Dict[FieldName, str]:
    fields = {name: "" for name in FieldName}
    fields[FieldName.DOSE_UNIT] = DoseUnit.MG.value
    # CONCENTRATION_UNIT stays blank until chosen; the guards fall back to the
    # dose unit's direct match
    return fields

@dataclass
class WorkflowState:
    """
    The only mutable aggregate of an entry session.
    Mutated exclusively by EntryWorkflowCoordinator transitions.
    """
    screen: Screen = Screen.INTRO
    step: EntryStep = EntryStep.DOSE
    fields: Dict[FieldName, str] = field(default_factory=_initial_fields)

    # Derived numbers, set once the owning step validated them
    dose_value: Optional[float] = None
    concentration: Optional[float] = None
    total_amount: Optional[float] = None
    solution_volume: Optional[float] = None

    instrument: Optional[Instrument] = None
    instrument_is_default: bool = False
    last_result: Optional[CalculationResult] = None

    hints: Dict[str, str] = field(default_factory=dict)
    health: Health = Health.HEALTHY
    last_activity: float = 0.0
    entry_mode: EntryMode = EntryMode.MANUAL
    reconstitution_visited: bool = False
    feedback: Optional[FeedbackContext] = None

    def raw(self, name: FieldName) -> str:
        return self.fields.get(name, "")
