import unittest

from pydantic import ValidationError

from constants import InstrumentFamily
from instruments import (
    InstrumentCatalog,
    MarkingTable,
    SyringeProfile,
    capacity_in_native_units,
    load_default_catalog,
    parse_capacity_label,
)
from models import Instrument, InstrumentConfigurationError, UnknownInstrumentError

class TestInstrumentCatalog(unittest.TestCase):

    def setUp(self):
        self.catalog = load_default_catalog()

    def test_01_default_catalog(self):
        self.assertEqual(len(self.catalog), 6)
        self.assertEqual(sorted(self.catalog.labels(InstrumentFamily.COUNT)), ["0.3 ml", "0.5 ml", "1 ml"])

        insulin = self.catalog.get(InstrumentFamily.COUNT, "1 ml")
        self.assertEqual(insulin.capacity, 100.0)
        self.assertEqual(insulin.capacity_ml, 1.0)
        self.assertEqual(insulin.scale_unit, "units")

        small = self.catalog.get(InstrumentFamily.COUNT, "0.3 ml")
        self.assertEqual(small.capacity, 30.0)

        standard = self.catalog.get(InstrumentFamily.VOLUME, "5 ml")
        self.assertEqual(standard.capacity, 5.0)
        self.assertEqual(standard.scale_unit, "ml")

    def test_02_every_instrument_is_consistent(self):
        for instrument in self.catalog:
            self.assertTrue(instrument.markings)
            self.assertEqual(list(instrument.markings), sorted(set(instrument.markings)))
            self.assertLessEqual(instrument.markings[-1], instrument.capacity)

    def test_03_capacity_labels(self):
        self.assertEqual(parse_capacity_label("0.5 ml"), (0.5, "ml"))
        self.assertEqual(parse_capacity_label("100 Units"), (100.0, "units"))
        self.assertEqual(parse_capacity_label("3"), (3.0, ""))
        with self.assertRaises(InstrumentConfigurationError):
            parse_capacity_label("large")

    def test_04_capacity_conversion_is_declared(self):
        """The suffix decides the factor, never the family alone."""
        self.assertEqual(capacity_in_native_units(InstrumentFamily.COUNT, "0.5 ml"), 50.0)
        self.assertEqual(capacity_in_native_units(InstrumentFamily.COUNT, "100 units"), 100.0)
        self.assertEqual(capacity_in_native_units(InstrumentFamily.VOLUME, "3 cc"), 3.0)
        with self.assertRaises(InstrumentConfigurationError):
            capacity_in_native_units(InstrumentFamily.VOLUME, "100 units")
        with self.assertRaises(InstrumentConfigurationError):
            capacity_in_native_units(InstrumentFamily.VOLUME, "2 oz")

    def test_05_marking_table_normalises(self):
        table = MarkingTable(family=InstrumentFamily.VOLUME, label="1 ml", markings=[0.3, 0.1, 0.2, 0.2])
        self.assertEqual(table.markings, [0.1, 0.2, 0.3])
        with self.assertRaises(ValidationError):
            MarkingTable(family=InstrumentFamily.VOLUME, label="1 ml", markings=[-0.1, 0.2])

    def test_06_bad_configuration_fails_at_load(self):
        with self.assertRaises(InstrumentConfigurationError):
            InstrumentCatalog.from_config({InstrumentFamily.VOLUME: {"1 ml": []}})
        with self.assertRaises(InstrumentConfigurationError):
            InstrumentCatalog.from_config({InstrumentFamily.VOLUME: {"1 ml": [0.5, 1.5]}})

    def test_07_instrument_invariants(self):
        with self.assertRaises(InstrumentConfigurationError):
            Instrument(InstrumentFamily.VOLUME, "1 ml", 1.0, ())
        with self.assertRaises(InstrumentConfigurationError):
            Instrument(InstrumentFamily.VOLUME, "1 ml", 1.0, (0.5, 0.2))
        with self.assertRaises(InstrumentConfigurationError):
            Instrument(InstrumentFamily.VOLUME, "1 ml", 0.5, (0.2, 1.0))

    def test_08_lookup(self):
        with self.assertRaises(UnknownInstrumentError):
            self.catalog.get(InstrumentFamily.VOLUME, "10 ml")
        with self.assertRaises(KeyError):
            self.catalog.get(InstrumentFamily.COUNT, "3 ml")
        self.assertIsNone(self.catalog.find(InstrumentFamily.VOLUME, "10 ml"))
        self.assertIn((InstrumentFamily.VOLUME, "3 ml"), self.catalog)

    def test_09_custom_profile(self):
        profile = SyringeProfile(profile_name="My 2ml", syringe_type=InstrumentFamily.VOLUME,
                                 volume="2 ml", markings="0.2, 0.4,0.6 ,2.0")
        instrument = self.catalog.add_profile(profile)

        self.assertEqual(instrument.markings, (0.2, 0.4, 0.6, 2.0))
        self.assertEqual(instrument.capacity, 2.0)
        self.assertIs(self.catalog.find(InstrumentFamily.VOLUME, "2 ml"), instrument)

    def test_10_bad_profiles(self):
        with self.assertRaises(ValidationError):
            SyringeProfile(profile_name="x", syringe_type=InstrumentFamily.VOLUME, volume="1 ml", markings="0.1,abc")
        with self.assertRaises(ValidationError):
            SyringeProfile(profile_name="x", syringe_type=InstrumentFamily.VOLUME, volume="1 ml", markings=" , ")

        too_long = SyringeProfile(profile_name="x", syringe_type=InstrumentFamily.VOLUME,
                                  volume="1 ml", markings="0.5,1.5")
        with self.assertRaises(InstrumentConfigurationError):
            self.catalog.add_profile(too_long)

if __name__ == '__main__':
    unittest.main()
