from enum import Enum
VERSION = "1.0.0"

MEDICAL_DISCLAIMER = """
⚠️ DOSE CALCULATION AID - NOT MEDICAL ADVICE
• Always verify the drawn volume against the prescription
• Confirm concentration and syringe type before injecting
• Not a substitute for a clinician or pharmacist
"""

class DoseUnit(Enum):
    MG = "mg"
    MCG = "mcg"
    UNITS = "units"
    ML = "mL"       # Direct volume, concentration unused

class ConcentrationUnit(Enum):
    MG_PER_ML = "mg/ml"
    MCG_PER_ML = "mcg/ml"
    UNITS_PER_ML = "units/ml"

    @property
    def amount_unit(self) -> DoseUnit:
        """The mass/count unit on the numerator side (also the unit of the vial total)."""
        return _NUMERATOR_UNITS[self]

_NUMERATOR_UNITS = {
    ConcentrationUnit.MG_PER_ML: DoseUnit.MG,
    ConcentrationUnit.MCG_PER_ML: DoseUnit.MCG,
    ConcentrationUnit.UNITS_PER_ML: DoseUnit.UNITS,
}

class InstrumentFamily(Enum):
    """Values match the syringe type names used in saved profiles."""
    VOLUME = "Standard"   # Graduated in ml
    COUNT = "Insulin"     # Graduated in U-100 units

class CALCULATION_CONSTANTS:
    # Distance from a printed mark that still counts as "on the mark"
    MARKING_EPSILON = 0.01
    # Below this the volume cannot be drawn reliably with any syringe
    MIN_MEASURABLE_VOLUME_ML = 0.01
    # Ties between two marks are decided on distances rounded to this many places
    DISTANCE_ROUNDING_DIGITS = 9
    MG_TO_MCG = 1000.0

    # Reconstitution sanity floors (derived concentration)
    MIN_DERIVED_CONCENTRATION = {
        ConcentrationUnit.MG_PER_ML: 0.01,
        ConcentrationUnit.MCG_PER_ML: 1.0,
    }

    # Native scale units per ml for each syringe family
    UNITS_PER_ML = {
        InstrumentFamily.VOLUME: 1.0,
        InstrumentFamily.COUNT: 100.0,   # U-100
    }

class WORKFLOW_CONSTANTS:
    STALE_SESSION_SECONDS = 15 * 60
    WATCHDOG_INTERVAL_SECONDS = 60.0
    # API sessions with no call for this long are dropped along with their watchdog
    SESSION_RETENTION_SECONDS = 60 * 60

    # Syringe picked on entry to the instrument step when the user has not chosen one
    DEFAULT_INSTRUMENT = {
        DoseUnit.MG: (InstrumentFamily.VOLUME, "3 ml"),
        DoseUnit.ML: (InstrumentFamily.VOLUME, "3 ml"),
        DoseUnit.MCG: (InstrumentFamily.COUNT, "1 ml"),
        DoseUnit.UNITS: (InstrumentFamily.COUNT, "1 ml"),
    }

class FEEDBACK_CONSTANTS:
    ORIENTATION_MAX_SHOWS = 2
    PMF_TRIGGER_SESSION_COUNT = 2
    RECENT_SITE_DAYS = 7
    LOCAL_LOG_CAPACITY = 100

class INSTRUMENT_LIBRARY:
    """
    Printed gradations of the supported syringes.
    Insulin syringes are read in units, standard syringes in ml.
    Validated into typed Instrument objects by instruments.py.
    """
    MARKINGS = {
        InstrumentFamily.COUNT: {
            "0.3 ml": [5, 10, 15, 20, 25, 30],
            "0.5 ml": [5, 10, 15, 20, 25, 30, 35, 40, 45, 50],
            "1 ml": [10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
        },
        InstrumentFamily.VOLUME: {
            "1 ml": [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
            "3 ml": [0.5, 1.0, 1.5, 2.0, 2.5, 3.0],
            "5 ml": [1.0, 2.0, 3.0, 4.0, 5.0],
        },
    }

# Injection site rotation zones (2x4 grid): (id, label, short label)
INJECTION_SITES = [
    ("abdomen_L", "Abdomen Left", "abdomen L"),
    ("abdomen_R", "Abdomen Right", "abdomen R"),
    ("thigh_L", "Thigh Left", "thigh L"),
    ("thigh_R", "Thigh Right", "thigh R"),
    ("glute_L", "Glute Left", "glute L"),
    ("glute_R", "Glute Right", "glute R"),
    ("arm_L", "Arm Left", "arm L"),
    ("arm_R", "Arm Right", "arm R"),
]

class ANALYTICS_EVENTS:
    MANUAL_ENTRY_STARTED = "manual_entry_started"
    MANUAL_ENTRY_COMPLETED = "manual_entry_completed"
    DOSE_COMPLETED = "dose_completed"
    DOSE_LOG_FAILED = "dose_log_failed"
    INJECTION_SITE_SELECTED = "injection_site_selected"
    ORIENTATION_PROMPT_SHOWN = "before_first_scan_prompt_shown"
    ORIENTATION_DONT_SHOW_AGAIN = "before_first_scan_dont_show_again"
    PMF_SURVEY_SHOWN = "pmf_survey_shown"
    PMF_SURVEY_COMPLETED = "pmf_survey_completed"
    PMF_SURVEY_SKIPPED = "pmf_survey_skipped"
    FEEDBACK_SUBMITTED = "feedback_submitted"
    FEEDBACK_SKIPPED = "feedback_skipped"
    SESSION_RECOVERED = "session_recovered"
