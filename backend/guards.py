# guards.py
"""
Step validity checks for the manual-entry workflow.

A forward transition is only taken when StepGuard.check() returns None.
Otherwise it returns (hint_key, message): the field the user has to fix and
the advisory text shown next to it.
"""
from typing import Optional, Tuple, Type, TypeVar

from constants import ConcentrationUnit, DoseUnit
from dose_engine import DoseCalculationEngine, as_positive
from models import EntryStep, FieldName, MedicationSource, WorkflowState

E = TypeVar("E")

FORM_HINT = "form"

# Concentration unit assumed while the user has not picked one
DIRECT_CONCENTRATION_UNIT = {
    DoseUnit.MG: ConcentrationUnit.MG_PER_ML,
    DoseUnit.MCG: ConcentrationUnit.MCG_PER_ML,
    DoseUnit.UNITS: ConcentrationUnit.UNITS_PER_ML,
    DoseUnit.ML: ConcentrationUnit.MG_PER_ML,
}

# --- Field readers (raw string -> typed value, None when unusable) ---

def parse_enum(enum_cls: Type[E], raw: Optional[str]) -> Optional[E]:
    if not raw:
        return None
    try:
        return enum_cls(raw)
    except ValueError:
        return None

def read_dose_unit(state: WorkflowState) -> Optional[DoseUnit]:
    return parse_enum(DoseUnit, state.raw(FieldName.DOSE_UNIT))

def read_concentration_unit(state: WorkflowState) -> Optional[ConcentrationUnit]:
    """The explicitly chosen unit only."""
    return parse_enum(ConcentrationUnit, state.raw(FieldName.CONCENTRATION_UNIT))

def effective_concentration_unit(state: WorkflowState) -> ConcentrationUnit:
    chosen = read_concentration_unit(state)
    if chosen is not None:
        return chosen
    return DIRECT_CONCENTRATION_UNIT[read_dose_unit(state) or DoseUnit.MG]

def read_medication_source(state: WorkflowState) -> Optional[MedicationSource]:
    return parse_enum(MedicationSource, state.raw(FieldName.MEDICATION_SOURCE))

def read_positive(state: WorkflowState, name: FieldName) -> Optional[float]:
    return as_positive((state.raw(name) or "").strip() or None)

class StepGuard:

    @staticmethod
    def check(step: EntryStep, state: WorkflowState) -> Optional[Tuple[str, str]]:
        checker = _CHECKS.get(step)
        return checker(state) if checker else None

    @staticmethod
    def is_valid(step: EntryStep, state: WorkflowState) -> bool:
        return StepGuard.check(step, state) is None

    @staticmethod
    def _dose(state: WorkflowState) -> Optional[Tuple[str, str]]:
        dose_unit = read_dose_unit(state)
        if dose_unit is None:
            return FieldName.DOSE_UNIT.value, "Please choose a valid dose unit."
        if read_positive(state, FieldName.DOSE) is None:
            return FieldName.DOSE.value, "Please enter a valid, positive dose amount."
        concentration_unit = read_concentration_unit(state)
        if concentration_unit is not None:
            compat = DoseCalculationEngine.validate_unit_compatibility(dose_unit, concentration_unit)
            if not compat.compatible:
                return FieldName.DOSE_UNIT.value, compat.message
        return None

    @staticmethod
    def _medication_source(state: WorkflowState) -> Optional[Tuple[str, str]]:
        if read_medication_source(state) is None:
            return FieldName.MEDICATION_SOURCE.value, "Please select how the medication amount is specified."
        return None

    @staticmethod
    def _concentration(state: WorkflowState) -> Optional[Tuple[str, str]]:
        if read_positive(state, FieldName.CONCENTRATION) is None:
            return FieldName.CONCENTRATION.value, "Please enter a valid, positive concentration amount."
        if state.raw(FieldName.CONCENTRATION_UNIT) and read_concentration_unit(state) is None:
            return FieldName.CONCENTRATION_UNIT.value, "Please choose a valid concentration unit."
        dose_unit = read_dose_unit(state) or DoseUnit.MG
        compat = DoseCalculationEngine.validate_unit_compatibility(dose_unit, effective_concentration_unit(state))
        if not compat.compatible:
            return FieldName.CONCENTRATION_UNIT.value, compat.message
        return None

    @staticmethod
    def _total_amount(state: WorkflowState) -> Optional[Tuple[str, str]]:
        if read_positive(state, FieldName.TOTAL_AMOUNT) is None:
            return FieldName.TOTAL_AMOUNT.value, "Please enter a valid, positive number for the total amount."
        return None

    @staticmethod
    def _reconstitution(state: WorkflowState) -> Optional[Tuple[str, str]]:
        if read_positive(state, FieldName.SOLUTION_VOLUME) is None:
            return FieldName.SOLUTION_VOLUME.value, "Please enter a valid, positive volume (in ml) added for reconstitution."
        return None

    @staticmethod
    def _instrument(state: WorkflowState) -> Optional[Tuple[str, str]]:
        # The dose unit may have been edited since the first step
        if read_dose_unit(state) is None:
            return FieldName.DOSE_UNIT.value, "Please choose a valid dose unit."
        if state.instrument is None:
            return FieldName.INSTRUMENT_VOLUME.value, "Please select a syringe type and volume."
        if not state.instrument.markings:
            return FieldName.INSTRUMENT_VOLUME.value, (
                f"Markings unavailable for {state.instrument.family.value} {state.instrument.label} syringe."
            )
        return None

    @staticmethod
    def _pre_confirmation(state: WorkflowState) -> Optional[Tuple[str, str]]:
        result = state.last_result
        if result is None:
            return FORM_HINT, "The dose has not been calculated yet. Go back to the syringe step."
        if result.is_failure:
            return FORM_HINT, result.message or "The calculation failed. Go back and correct your inputs."
        return None

_CHECKS = {
    EntryStep.DOSE: StepGuard._dose,
    EntryStep.MEDICATION_SOURCE: StepGuard._medication_source,
    EntryStep.CONCENTRATION_INPUT: StepGuard._concentration,
    EntryStep.TOTAL_AMOUNT_INPUT: StepGuard._total_amount,
    EntryStep.RECONSTITUTION: StepGuard._reconstitution,
    EntryStep.INSTRUMENT: StepGuard._instrument,
    EntryStep.PRE_CONFIRMATION: StepGuard._pre_confirmation,
}
