# routing.py
"""
Where the manual-entry workflow goes next.

Both directions are recomputed from the current field values on every call.
Back-navigation is not a history stack: if the user changes an earlier
answer, going back follows the path the new answer implies.
"""
import logging
from typing import Optional, Tuple

from constants import WORKFLOW_CONSTANTS, DoseUnit, InstrumentFamily
from guards import read_dose_unit, read_medication_source, read_positive
from instruments import InstrumentCatalog
from models import EntryStep, FieldName, MedicationSource, WorkflowState

logger = logging.getLogger("doseflow.routing")

class InstrumentSelector:
    @staticmethod
    def default_for(dose_unit: DoseUnit) -> Tuple[InstrumentFamily, str, str]:
        """(family, label, hint) of the syringe suggested for a dose unit."""
        family, label = WORKFLOW_CONSTANTS.DEFAULT_INSTRUMENT[dose_unit]
        if dose_unit == DoseUnit.UNITS:
            hint = "Insulin syringe suggested due to units."
        elif dose_unit == DoseUnit.MCG:
            hint = "Insulin syringe suggested due to micrograms."
        elif dose_unit == DoseUnit.ML:
            hint = "Standard syringe selected for a volume dose."
        else:
            hint = "Standard syringe selected for milligrams."
        return family, label, hint

class StepRouter:

    @staticmethod
    def next_step(state: WorkflowState) -> EntryStep:
        step = state.step
        source = read_medication_source(state)

        if step == EntryStep.DOSE:
            return EntryStep.MEDICATION_SOURCE
        if step == EntryStep.MEDICATION_SOURCE:
            if source == MedicationSource.TOTAL_AMOUNT:
                return EntryStep.TOTAL_AMOUNT_INPUT
            return EntryStep.CONCENTRATION_INPUT
        if step == EntryStep.TOTAL_AMOUNT_INPUT:
            # A powder vial needs to know how much diluent was added
            if source == MedicationSource.TOTAL_AMOUNT and read_positive(state, FieldName.SOLUTION_VOLUME) is None:
                return EntryStep.RECONSTITUTION
            return EntryStep.INSTRUMENT
        if step in (EntryStep.CONCENTRATION_INPUT, EntryStep.RECONSTITUTION):
            return EntryStep.INSTRUMENT
        if step == EntryStep.INSTRUMENT:
            return EntryStep.PRE_CONFIRMATION
        return EntryStep.RESULT

    @staticmethod
    def previous_step(state: WorkflowState) -> Optional[EntryStep]:
        """None means leaving the manual-entry branch altogether."""
        step = state.step
        source = read_medication_source(state)

        if step == EntryStep.RESULT:
            return EntryStep.PRE_CONFIRMATION
        if step == EntryStep.PRE_CONFIRMATION:
            return EntryStep.INSTRUMENT
        if step == EntryStep.INSTRUMENT:
            if source == MedicationSource.TOTAL_AMOUNT:
                return EntryStep.RECONSTITUTION if state.reconstitution_visited else EntryStep.TOTAL_AMOUNT_INPUT
            return EntryStep.CONCENTRATION_INPUT
        if step == EntryStep.RECONSTITUTION:
            return EntryStep.TOTAL_AMOUNT_INPUT
        if step in (EntryStep.CONCENTRATION_INPUT, EntryStep.TOTAL_AMOUNT_INPUT):
            return EntryStep.MEDICATION_SOURCE
        if step == EntryStep.MEDICATION_SOURCE:
            return EntryStep.DOSE
        return None

    @staticmethod
    def on_enter(step: EntryStep, state: WorkflowState, catalog: InstrumentCatalog,
                 came_from: Optional[EntryStep] = None) -> None:
        """Derivations that belong to entering a step."""
        if step == EntryStep.RECONSTITUTION:
            state.reconstitution_visited = True

        elif step == EntryStep.INSTRUMENT:
            if came_from == EntryStep.TOTAL_AMOUNT_INPUT:
                # Solution volume was already known, this pass skipped Reconstitution
                state.reconstitution_visited = False
            if state.instrument is not None and not state.instrument_is_default:
                return
            family, label, hint = InstrumentSelector.default_for(read_dose_unit(state) or DoseUnit.MG)
            state.instrument = catalog.find(family, label)
            state.instrument_is_default = True
            state.fields[FieldName.INSTRUMENT_FAMILY] = family.value
            state.fields[FieldName.INSTRUMENT_VOLUME] = label
            state.hints[FieldName.INSTRUMENT_VOLUME.value] = hint
            logger.debug(f"Default syringe derived: {family.value} {label}")
