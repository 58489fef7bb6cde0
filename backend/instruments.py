"""
Syringe catalog.

Marking tables arrive as loosely typed configuration (lists of numbers keyed by
family and a capacity label such as "0.5 ml"). They are validated once, when the
catalog is built, into immutable Instrument objects so that nothing downstream
ever parses a label or a marking string again.
"""

import logging
import re
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from constants import CALCULATION_CONSTANTS, INSTRUMENT_LIBRARY, InstrumentFamily
from models import Instrument, InstrumentConfigurationError, UnknownInstrumentError

logger = logging.getLogger("doseflow.instruments")

_LABEL_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?|\.\d+)\s*([A-Za-z]*)\s*$")
_ML_SUFFIXES = {"", "ml", "cc"}
_UNIT_SUFFIXES = {"u", "unit", "units", "iu"}

def parse_capacity_label(label: str) -> Tuple[float, str]:
    """
    Splits "0.5 ml" into (0.5, "ml"). The suffix is returned lower-cased and
    may be empty.
    """
    match = _LABEL_PATTERN.match(label or "")
    if not match:
        raise InstrumentConfigurationError(f"Capacity label '{label}' has no numeric magnitude")
    return float(match.group(1)), match.group(2).lower()

def capacity_in_native_units(family: InstrumentFamily, label: str) -> float:
    """
    Converts a capacity label to the family's native scale.
    A volume suffix (or none) goes through the declared units-per-ml factor;
    a unit suffix is already native and only valid for count syringes.
    """
    magnitude, suffix = parse_capacity_label(label)
    if suffix in _ML_SUFFIXES:
        factor = CALCULATION_CONSTANTS.UNITS_PER_ML[family]
        return round(magnitude * factor, CALCULATION_CONSTANTS.DISTANCE_ROUNDING_DIGITS)
    if suffix in _UNIT_SUFFIXES:
        if family != InstrumentFamily.COUNT:
            raise InstrumentConfigurationError(f"'{label}' is a unit capacity but {family.value} syringes are read in ml")
        return magnitude
    raise InstrumentConfigurationError(f"Unknown capacity unit '{suffix}' in label '{label}'")

class MarkingTable(BaseModel):
    """One syringe's configuration entry, validated at load time."""
    family: InstrumentFamily
    label: str = Field(..., min_length=1)
    markings: List[float] = Field(..., min_length=1)

    @field_validator("markings")
    @classmethod
    def markings_sorted_and_unique(cls, v: List[float]) -> List[float]:
        if any(m < 0 for m in v):
            raise ValueError("markings must be non-negative")
        return sorted(set(float(m) for m in v))

    def to_instrument(self) -> Instrument:
        capacity = capacity_in_native_units(self.family, self.label)
        return Instrument(
            family=self.family,
            label=self.label,
            capacity=capacity,
            markings=tuple(self.markings),
        )

class SyringeProfile(BaseModel):
    """A user-defined syringe as saved by the profile screen."""
    profile_name: str = Field(..., min_length=1)
    syringe_type: InstrumentFamily
    volume: str = Field(..., description="Capacity label, e.g. '1 ml' or '100 units'")
    markings: str = Field(..., description="Comma-separated gradations, e.g. '0.1,0.2,0.3'")

    @field_validator("markings")
    @classmethod
    def markings_must_parse(cls, v: str) -> str:
        parts = [p.strip() for p in v.split(",") if p.strip()]
        if not parts:
            raise ValueError("at least one marking is required")
        for p in parts:
            try:
                float(p)
            except ValueError:
                raise ValueError(f"marking '{p}' is not a number")
        return ",".join(parts)

    def to_marking_table(self) -> MarkingTable:
        return MarkingTable(
            family=self.syringe_type,
            label=self.volume,
            markings=[float(p) for p in self.markings.split(",")],
        )

class InstrumentCatalog:
    """Typed mapping (family, label) -> Instrument."""

    def __init__(self, instruments: Optional[Dict[Tuple[InstrumentFamily, str], Instrument]] = None):
        self._instruments: Dict[Tuple[InstrumentFamily, str], Instrument] = dict(instruments or {})

    @classmethod
    def from_config(cls, raw: Dict[InstrumentFamily, Dict[str, List[float]]]) -> 'InstrumentCatalog':
        catalog = cls()
        for family, tables in raw.items():
            for label, markings in tables.items():
                try:
                    table = MarkingTable(family=family, label=label, markings=markings)
                except ValidationError as e:
                    raise InstrumentConfigurationError(f"Invalid marking table {family} {label}: {e}") from e
                catalog.register(table.to_instrument())
        logger.info(f"Instrument catalog loaded with {len(catalog)} syringes")
        return catalog

    def register(self, instrument: Instrument) -> Instrument:
        self._instruments[(instrument.family, instrument.label)] = instrument
        return instrument

    def add_profile(self, profile: SyringeProfile) -> Instrument:
        """Validates a custom syringe profile and makes it selectable."""
        try:
            table = profile.to_marking_table()
        except ValidationError as e:
            raise InstrumentConfigurationError(f"Invalid syringe profile '{profile.profile_name}': {e}") from e
        return self.register(table.to_instrument())

    def get(self, family: InstrumentFamily, label: str) -> Instrument:
        try:
            return self._instruments[(family, label)]
        except KeyError:
            raise UnknownInstrumentError(f"No {family.value} syringe with capacity '{label}'")

    def find(self, family: InstrumentFamily, label: str) -> Optional[Instrument]:
        return self._instruments.get((family, label))

    def labels(self, family: InstrumentFamily) -> List[str]:
        return [label for (fam, label) in self._instruments if fam == family]

    def __contains__(self, key) -> bool:
        return key in self._instruments

    def __iter__(self) -> Iterator[Instrument]:
        return iter(self._instruments.values())

    def __len__(self) -> int:
        return len(self._instruments)

def load_default_catalog() -> InstrumentCatalog:
    return InstrumentCatalog.from_config(INSTRUMENT_LIBRARY.MARKINGS)
