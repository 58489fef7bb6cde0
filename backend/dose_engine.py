"""
DoseFlow: Dose Calculation Engine
=================================
Pure functions that reconcile dose and concentration units, compute the
volume to draw, and snap it onto a syringe's printed scale.

Nothing here keeps state or performs I/O, and nothing raises for bad input:
every failure comes back as a CalculationResult carrying an error kind so the
workflow can always display it.
"""

import logging
import math
from typing import List, NamedTuple, Optional, Sequence, Tuple

from constants import CALCULATION_CONSTANTS, ConcentrationUnit, DoseUnit
from models import CalculationErrorKind, CalculationResult, DoseRequest, Instrument

logger = logging.getLogger("doseflow.engine")

class UnitCompatibility(NamedTuple):
    compatible: bool
    message: Optional[str] = None

# Pairs that need no conversion
_DIRECT_PAIRS = {
    (DoseUnit.MG, ConcentrationUnit.MG_PER_ML),
    (DoseUnit.MCG, ConcentrationUnit.MCG_PER_ML),
    (DoseUnit.UNITS, ConcentrationUnit.UNITS_PER_ML),
}
# Mass pairs that convert by a factor of 1000
_CONVERTIBLE_PAIRS = {
    (DoseUnit.MG, ConcentrationUnit.MCG_PER_ML),
    (DoseUnit.MCG, ConcentrationUnit.MG_PER_ML),
}

def as_positive(value) -> Optional[float]:
    """float(value) if it is a finite number > 0, else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number

def _exceeds(value: float, limit: float) -> bool:
    return round(value - limit, CALCULATION_CONSTANTS.DISTANCE_ROUNDING_DIGITS) > 0

def _fmt(value: float) -> str:
    return f"{value:g}"

class DoseCalculationEngine:
    """
    The Mathematical Core.
    DoseRequest -> required volume -> nearest printed marking.
    """

    @staticmethod
    def validate_unit_compatibility(dose_unit: DoseUnit,
                                    concentration_unit: ConcentrationUnit) -> UnitCompatibility:
        # A volume dose is drawn as-is, the concentration is irrelevant
        if dose_unit == DoseUnit.ML:
            return UnitCompatibility(True)
        pair = (dose_unit, concentration_unit)
        if pair in _DIRECT_PAIRS or pair in _CONVERTIBLE_PAIRS:
            return UnitCompatibility(True)
        return UnitCompatibility(
            False,
            f"Incompatible units (unit mismatch): a {dose_unit.value} dose cannot be "
            f"calculated with a {concentration_unit.value} concentration.",
        )

    @staticmethod
    def compatible_concentration_units(dose_unit: DoseUnit) -> List[ConcentrationUnit]:
        """Concentration units that may be paired with dose_unit, direct match first."""
        if dose_unit == DoseUnit.ML:
            return list(ConcentrationUnit)
        direct = [c for (d, c) in _DIRECT_PAIRS if d == dose_unit]
        converted = [c for (d, c) in _CONVERTIBLE_PAIRS if d == dose_unit]
        return direct + converted

    @staticmethod
    def convert_amount(value: float, from_unit: DoseUnit, to_unit: DoseUnit) -> float:
        """mg <-> mcg conversion. Identical units pass through; anything else is a caller bug."""
        if from_unit == to_unit:
            return value
        if from_unit == DoseUnit.MG and to_unit == DoseUnit.MCG:
            return value * CALCULATION_CONSTANTS.MG_TO_MCG
        if from_unit == DoseUnit.MCG and to_unit == DoseUnit.MG:
            return value / CALCULATION_CONSTANTS.MG_TO_MCG
        raise ValueError(f"No conversion from {from_unit.value} to {to_unit.value}")

    @staticmethod
    def _resolve_concentration(request: DoseRequest) -> Tuple[Optional[float], Optional[float], Optional[CalculationResult]]:
        """
        Returns (concentration, derived_concentration, failure).
        A vial described by total amount + diluent volume yields a derived
        concentration, rejected when implausibly dilute.
        """
        concentration = as_positive(request.concentration)
        if concentration is not None:
            return concentration, None, None

        total = as_positive(request.total_amount)
        solution = as_positive(request.solution_volume)
        if total is None or solution is None:
            return None, None, None

        derived = total / solution
        floor = CALCULATION_CONSTANTS.MIN_DERIVED_CONCENTRATION.get(request.concentration_unit)
        if floor is not None and derived < floor:
            amount_unit = request.concentration_unit.amount_unit.value
            return None, derived, CalculationResult.failure(
                CalculationErrorKind.INVALID_CONCENTRATION,
                f"Calculated concentration ({derived:.4f} {request.concentration_unit.value}) is extremely low. "
                f"Please verify the total amount ({_fmt(total)} {amount_unit}) and solution volume "
                f"({_fmt(solution)} ml) are correct.",
                computed_concentration=derived,
            )
        return derived, derived, None

    @staticmethod
    def required_volume(dose: float, dose_unit: DoseUnit,
                        concentration: Optional[float],
                        concentration_unit: ConcentrationUnit) -> float:
        """Volume in ml. Assumes the unit pair already passed compatibility."""
        if dose_unit == DoseUnit.ML:
            return dose
        amount = DoseCalculationEngine.convert_amount(dose, dose_unit, concentration_unit.amount_unit)
        return amount / concentration

    @staticmethod
    def select_marking(markings: Sequence[float], scale_value: float) -> float:
        """
        Closest marking to scale_value. Ties go to the first marking in
        ascending order; distances are rounded so float noise cannot split a tie.
        """
        digits = CALCULATION_CONSTANTS.DISTANCE_ROUNDING_DIGITS
        best = None
        best_distance = None
        for marking in sorted(markings):
            distance = round(abs(marking - scale_value), digits)
            if best_distance is None or distance < best_distance:
                best, best_distance = marking, distance
        return best

    @staticmethod
    def precision_message(markings: Sequence[float], scale_value: float, unit_label: str) -> str:
        """Guidance for a dose that falls between printed gradations."""
        exact = f"{scale_value:.2f}"
        ordered = sorted(markings)
        lower = [m for m in ordered if m <= scale_value]
        upper = [m for m in ordered if m > scale_value]

        if lower and upper:
            return (f"Draw to {exact} {unit_label}, which is between the {_fmt(lower[-1])} {unit_label} "
                    f"and {_fmt(upper[0])} {unit_label} marks.")
        if not lower:
            return f"Draw to {exact} {unit_label}, which is below the first marking at {_fmt(ordered[0])} {unit_label}."
        return f"Draw to {exact} {unit_label}, which is above the {_fmt(lower[-1])} {unit_label} mark."

    @staticmethod
    def calculate_dose(request: DoseRequest) -> CalculationResult:
        """
        Runs the checks in order and returns on the first failure:
        dose -> concentration/units -> syringe -> volume -> vial supply ->
        syringe capacity -> marking.
        """
        logger.debug(f"Calculating dose: {request}")

        # 1. Dose
        dose = as_positive(request.dose_value)
        if dose is None:
            return DoseCalculationEngine._fail(CalculationErrorKind.INVALID_DOSE,
                                               "Dose value is invalid or missing.")

        # 2. Concentration & units
        concentration, derived, failure = DoseCalculationEngine._resolve_concentration(request)
        if request.dose_unit != DoseUnit.ML:
            if failure is not None:
                logger.info(f"Calculation failed: {failure.error.value}")
                return failure
            if concentration is None:
                return DoseCalculationEngine._fail(CalculationErrorKind.INVALID_CONCENTRATION,
                                                   "Concentration is invalid or missing.")
            compat = DoseCalculationEngine.validate_unit_compatibility(request.dose_unit, request.concentration_unit)
            if not compat.compatible:
                return DoseCalculationEngine._fail(CalculationErrorKind.UNIT_MISMATCH, compat.message, derived)

        # 3. Syringe
        instrument: Optional[Instrument] = request.instrument
        if instrument is None:
            return DoseCalculationEngine._fail(CalculationErrorKind.NO_MARKINGS_AVAILABLE,
                                               "Syringe details are missing.", derived)
        if not instrument.markings:
            return DoseCalculationEngine._fail(
                CalculationErrorKind.NO_MARKINGS_AVAILABLE,
                f"Markings unavailable for {instrument.family.value} {instrument.label} syringe.", derived)

        # 4. Volume
        volume = DoseCalculationEngine.required_volume(dose, request.dose_unit, concentration,
                                                       request.concentration_unit)
        if volume < CALCULATION_CONSTANTS.MIN_MEASURABLE_VOLUME_ML:
            return DoseCalculationEngine._fail(
                CalculationErrorKind.VOLUME_TOO_SMALL,
                f"Calculated volume ({volume:.4f} ml) is too small to measure accurately. "
                f"Check the dose and concentration.", derived)

        # 5. Vial supply
        if request.total_amount is not None:
            total = as_positive(request.total_amount) or 0.0
            total_unit = request.concentration_unit.amount_unit
            if request.dose_unit != DoseUnit.ML:
                dose_in_total_unit = DoseCalculationEngine.convert_amount(dose, request.dose_unit, total_unit)
                if _exceeds(dose_in_total_unit, total):
                    return DoseCalculationEngine._fail(
                        CalculationErrorKind.DOSE_EXCEEDS_AVAILABLE,
                        f"Requested dose ({_fmt(dose)} {request.dose_unit.value}) exceeds total amount "
                        f"available ({_fmt(total)} {total_unit.value}).", derived)
            if concentration is not None:
                max_volume = total / concentration
                if _exceeds(volume, max_volume):
                    return DoseCalculationEngine._fail(
                        CalculationErrorKind.VOLUME_EXCEEDS_AVAILABLE,
                        f"Required volume ({volume:.2f} ml) exceeds what can be made from available "
                        f"medication ({max_volume:.2f} ml).", derived)

        # 6. Syringe capacity
        if _exceeds(volume, instrument.capacity_ml):
            return DoseCalculationEngine._fail(
                CalculationErrorKind.EXCEEDS_INSTRUMENT_CAPACITY,
                f"Required volume ({volume:.2f} ml) exceeds syringe capacity ({_fmt(instrument.capacity_ml)} ml).",
                derived)

        # 7-9. Marking
        scale_value = volume * instrument.units_per_ml
        marking = DoseCalculationEngine.select_marking(instrument.markings, scale_value)

        advisory = None
        message = None
        if abs(marking - scale_value) > CALCULATION_CONSTANTS.MARKING_EPSILON:
            advisory = CalculationErrorKind.PRECISION_ADVISORY
            message = DoseCalculationEngine.precision_message(instrument.markings, scale_value,
                                                              instrument.scale_unit)

        logger.debug(f"Volume {volume:.4f} ml -> scale {scale_value:.4f} {instrument.scale_unit}, mark {marking}")
        return CalculationResult(
            computed_volume=volume,
            recommended_marking=marking,
            error=advisory,
            message=message,
            computed_concentration=derived,
            scale_value=scale_value,
            scale_unit=instrument.scale_unit,
        )

    @staticmethod
    def _fail(kind: CalculationErrorKind, message: str,
              computed_concentration: Optional[float] = None) -> CalculationResult:
        logger.info(f"Calculation failed: {kind.value} - {message}")
        return CalculationResult.failure(kind, message, computed_concentration)
