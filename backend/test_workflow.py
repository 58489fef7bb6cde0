import threading
import time
import unittest

from collaborators import InMemoryAnalytics, InMemoryDoseRepository
from constants import ANALYTICS_EVENTS, InstrumentFamily
from models import CalculationErrorKind, EntryMode, EntryStep, FieldName, Health, Screen
from workflow import EntryWorkflowCoordinator, IdleWatchdog

class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def tick(self, seconds: float) -> None:
        self.now += seconds

def make_coordinator(**kwargs):
    clock = kwargs.pop('clock', None) or FakeClock()
    coordinator = EntryWorkflowCoordinator(
        persistence=kwargs.pop('persistence', None) or InMemoryDoseRepository(),
        analytics=kwargs.pop('analytics', None) or InMemoryAnalytics(),
        clock=clock,
        **kwargs,
    )
    return coordinator, clock

def enter_concentration_dose(c, dose="50", dose_unit="mg", concentration="25", concentration_unit=None):
    """Dose -> source -> concentration, stops on Instrument."""
    c.begin_manual_entry()
    c.edit_field(FieldName.DOSE, dose)
    c.edit_field(FieldName.DOSE_UNIT, dose_unit)
    c.advance()
    c.edit_field(FieldName.MEDICATION_SOURCE, "concentration")
    c.advance()
    c.edit_field(FieldName.CONCENTRATION, concentration)
    if concentration_unit:
        c.edit_field(FieldName.CONCENTRATION_UNIT, concentration_unit)
    return c.advance()

def walk_to_result(c, **kwargs):
    enter_concentration_dose(c, **kwargs)
    c.advance()   # Instrument -> PreConfirmation
    return c.advance()

class TestEntryWorkflow(unittest.TestCase):

    def setUp(self):
        self.c, self.clock = make_coordinator()

    def test_01_happy_path(self):
        print("\nTEST 1: 50 mg @ 25 mg/ml through every step")
        state = enter_concentration_dose(self.c)
        self.assertEqual(state.step, EntryStep.INSTRUMENT)

        state = self.c.advance()
        self.assertEqual(state.step, EntryStep.PRE_CONFIRMATION)
        self.assertAlmostEqual(state.last_result.computed_volume, 2.0)

        state = self.c.advance()
        print(f"Step: {state.step}, Mark: {state.last_result.recommended_marking}")
        self.assertEqual(state.step, EntryStep.RESULT)
        self.assertEqual(self.c.analytics.count(ANALYTICS_EVENTS.MANUAL_ENTRY_COMPLETED), 1)

    def test_02_invalid_dose_never_advances(self):
        self.c.begin_manual_entry()
        for bad in ["", "abc", "-3", "0", "nan"]:
            self.c.edit_field(FieldName.DOSE, bad)
            state = self.c.advance()
            self.assertEqual(state.step, EntryStep.DOSE, f"dose={bad!r}")
            self.assertIn(FieldName.DOSE.value, state.hints)
            self.assertFalse(self.c.is_valid())

    def test_03_dose_checks_chosen_concentration_unit(self):
        self.c.begin_manual_entry()
        self.c.edit_field(FieldName.DOSE, "10")
        self.c.edit_field(FieldName.DOSE_UNIT, "units")
        self.c.edit_field(FieldName.CONCENTRATION_UNIT, "mg/ml")
        state = self.c.advance()

        self.assertEqual(state.step, EntryStep.DOSE)
        self.assertIn("unit mismatch", state.hints[FieldName.DOSE_UNIT.value])

    def test_04_source_must_be_chosen(self):
        self.c.begin_manual_entry()
        self.c.edit_field(FieldName.DOSE, "10")
        self.c.advance()
        state = self.c.advance()
        self.assertEqual(state.step, EntryStep.MEDICATION_SOURCE)
        self.assertIn(FieldName.MEDICATION_SOURCE.value, state.hints)

    def test_05_total_amount_branch_visits_reconstitution(self):
        c = self.c
        c.begin_manual_entry()
        c.edit_field(FieldName.DOSE, "5")
        c.advance()
        c.edit_field(FieldName.MEDICATION_SOURCE, "totalAmount")
        state = c.advance()
        self.assertEqual(state.step, EntryStep.TOTAL_AMOUNT_INPUT)

        c.edit_field(FieldName.TOTAL_AMOUNT, "10")
        state = c.advance()
        self.assertEqual(state.step, EntryStep.RECONSTITUTION)
        self.assertTrue(state.reconstitution_visited)

        state = c.advance()
        self.assertEqual(state.step, EntryStep.RECONSTITUTION)   # No solution volume yet

        c.edit_field(FieldName.SOLUTION_VOLUME, "2")
        state = c.advance()
        self.assertEqual(state.step, EntryStep.INSTRUMENT)

        state = c.advance()
        self.assertIsNone(state.last_result.error)
        self.assertAlmostEqual(state.last_result.computed_concentration, 5.0)
        self.assertAlmostEqual(state.last_result.computed_volume, 1.0)

        self.assertEqual(c.back().step, EntryStep.INSTRUMENT)
        self.assertEqual(c.back().step, EntryStep.RECONSTITUTION)
        self.assertEqual(c.back().step, EntryStep.TOTAL_AMOUNT_INPUT)
        self.assertEqual(c.back().step, EntryStep.MEDICATION_SOURCE)
        self.assertEqual(c.back().step, EntryStep.DOSE)

    def test_06_known_solution_volume_skips_reconstitution(self):
        c = self.c
        c.begin_manual_entry()
        c.edit_field(FieldName.DOSE, "5")
        c.edit_field(FieldName.SOLUTION_VOLUME, "2")
        c.advance()
        c.edit_field(FieldName.MEDICATION_SOURCE, "totalAmount")
        c.advance()
        c.edit_field(FieldName.TOTAL_AMOUNT, "10")
        state = c.advance()

        self.assertEqual(state.step, EntryStep.INSTRUMENT)
        self.assertFalse(state.reconstitution_visited)
        self.assertEqual(c.back().step, EntryStep.TOTAL_AMOUNT_INPUT)

    def test_07_back_follows_current_answers(self):
        """Switching the source at Instrument changes where Back goes."""
        c = self.c
        state = enter_concentration_dose(c)
        self.assertEqual(state.step, EntryStep.INSTRUMENT)

        c.edit_field(FieldName.MEDICATION_SOURCE, "totalAmount")
        state = c.back()
        self.assertEqual(state.step, EntryStep.TOTAL_AMOUNT_INPUT)

    def test_08_instrument_advance_always_stores_a_result(self):
        # 50 mg @ 10 mg/ml = 5 ml, too much for the default 3 ml syringe
        state = enter_concentration_dose(self.c, concentration="10")
        self.assertIsNone(state.last_result)

        state = self.c.advance()
        self.assertEqual(state.step, EntryStep.PRE_CONFIRMATION)
        self.assertIsNotNone(state.last_result)
        self.assertEqual(state.last_result.error, CalculationErrorKind.EXCEEDS_INSTRUMENT_CAPACITY)

        # A failed calculation is reviewable but not confirmable
        state = self.c.advance()
        self.assertEqual(state.step, EntryStep.PRE_CONFIRMATION)
        self.assertIn("form", state.hints)

    def test_09_default_instrument_on_entry(self):
        state = enter_concentration_dose(self.c)
        self.assertEqual(state.instrument.family, InstrumentFamily.VOLUME)
        self.assertEqual(state.instrument.label, "3 ml")
        self.assertTrue(state.instrument_is_default)

        c, _ = make_coordinator()
        state = enter_concentration_dose(c, dose="10", dose_unit="units", concentration="100")
        self.assertEqual(state.instrument.family, InstrumentFamily.COUNT)
        self.assertEqual(state.instrument.label, "1 ml")
        self.assertIn("Insulin", state.hints[FieldName.INSTRUMENT_VOLUME.value])

    def test_10_chosen_instrument_survives_re_entry(self):
        c = self.c
        enter_concentration_dose(c, dose="10")
        c.edit_field(FieldName.INSTRUMENT_FAMILY, "Standard")
        state = c.edit_field(FieldName.INSTRUMENT_VOLUME, "1 ml")
        self.assertFalse(state.instrument_is_default)

        c.back()
        state = c.advance()
        self.assertEqual(state.step, EntryStep.INSTRUMENT)
        self.assertEqual(state.instrument.label, "1 ml")

    def test_11_unknown_syringe_blocks_instrument(self):
        enter_concentration_dose(self.c)
        state = self.c.edit_field(FieldName.INSTRUMENT_VOLUME, "10 ml")
        self.assertIsNone(state.instrument)
        state = self.c.advance()
        self.assertEqual(state.step, EntryStep.INSTRUMENT)
        self.assertIn(FieldName.INSTRUMENT_VOLUME.value, state.hints)

    def test_12_edit_discards_result(self):
        enter_concentration_dose(self.c)
        state = self.c.advance()
        self.assertIsNotNone(state.last_result)

        state = self.c.edit_field(FieldName.DOSE, "25")
        self.assertIsNone(state.last_result)
        self.assertEqual(state.dose_value, 25.0)

    def test_13_result_is_read_only(self):
        walk_to_result(self.c)
        state = self.c.edit_field(FieldName.DOSE, "1")
        self.assertEqual(state.raw(FieldName.DOSE), "50")
        self.assertIn("form", state.hints)

    def test_14_unknown_field(self):
        self.c.begin_manual_entry()
        state = self.c.edit_field("flavour", "cherry")
        self.assertIn("Unknown field", state.hints["form"])

    def test_15_back_from_dose_leaves_entry(self):
        self.c.begin_manual_entry()
        self.c.edit_field(FieldName.DOSE, "5")
        state = self.c.back()
        self.assertEqual(state.screen, Screen.INTRO)
        self.assertEqual(state.raw(FieldName.DOSE), "")

    def test_16_idle_session_is_reset(self):
        print("\nTEST 16: Idle recovery")
        enter_concentration_dose(self.c)
        self.clock.tick(15 * 60 + 1)

        state = self.c.advance()
        print(f"After idle: {state.screen}/{state.step}, health={state.health}")
        self.assertEqual(state.step, EntryStep.DOSE)
        self.assertEqual(state.screen, Screen.MANUAL_ENTRY)
        self.assertEqual(state.health, Health.RECOVERING)
        self.assertIsNone(state.last_result)
        self.assertEqual(state.raw(FieldName.DOSE), "")
        self.assertEqual(self.c.analytics.count(ANALYTICS_EVENTS.SESSION_RECOVERED), 1)

        # Recovering until the next successful forward move
        self.c.edit_field(FieldName.DOSE, "5")
        self.assertEqual(self.c.state.health, Health.RECOVERING)
        state = self.c.advance()
        self.assertEqual(state.step, EntryStep.MEDICATION_SOURCE)
        self.assertEqual(state.health, Health.HEALTHY)

    def test_17_idle_threshold_is_exclusive(self):
        enter_concentration_dose(self.c)
        self.clock.tick(15 * 60)
        state = self.c.advance()
        self.assertEqual(state.step, EntryStep.PRE_CONFIRMATION)
        self.assertEqual(state.health, Health.HEALTHY)

    def test_18_idle_reset_from_any_step(self):
        for steps in range(0, 4):
            c, clock = make_coordinator()
            walk_to_result(c)
            for _ in range(steps):
                c.back()
            clock.tick(3600)
            self.assertTrue(c.check_staleness())
            self.assertEqual(c.state.step, EntryStep.DOSE)
            self.assertEqual(c.state.health, Health.RECOVERING)

    def test_19_intro_is_never_stale(self):
        self.clock.tick(3600)
        self.assertFalse(self.c.check_staleness())
        state = self.c.begin_manual_entry()
        self.assertEqual(state.screen, Screen.MANUAL_ENTRY)
        self.assertEqual(state.health, Health.HEALTHY)

    def test_20_capture_prefill(self):
        state = self.c.apply_capture({
            "substance_name": "Semaglutide",
            "dose": "2000",
            "dose_unit": "mcg",
            "concentration": "2",
            "concentration_unit": "mg/ml",
            "lot_number": "A123",
        })
        self.assertEqual(state.screen, Screen.MANUAL_ENTRY)
        self.assertEqual(state.step, EntryStep.DOSE)
        self.assertEqual(state.entry_mode, EntryMode.SCAN)
        self.assertEqual(state.dose_value, 2000.0)
        self.assertIn(FieldName.CONCENTRATION.value, state.hints)
        self.assertNotIn("lot_number", state.hints)

        self.assertEqual(self.c.advance().step, EntryStep.MEDICATION_SOURCE)

    def test_21_build_request_uses_direct_unit(self):
        enter_concentration_dose(self.c, dose="2000", dose_unit="mcg", concentration="2000")
        request = self.c.build_request()
        self.assertEqual(request.concentration_unit.value, "mcg/ml")
        self.assertEqual(request.concentration, 2000.0)

    def test_22_watchdog_resets_idle_session(self):
        enter_concentration_dose(self.c)
        self.clock.tick(3600)

        watchdog = IdleWatchdog(self.c, interval=0.01).start()
        try:
            deadline = time.time() + 2.0
            while self.c.state.health != Health.RECOVERING and time.time() < deadline:
                time.sleep(0.01)
        finally:
            watchdog.stop(timeout=1.0)

        self.assertEqual(self.c.state.health, Health.RECOVERING)
        self.assertEqual(self.c.state.step, EntryStep.DOSE)

    def test_23_switching_to_total_amount_drops_old_concentration(self):
        """A concentration typed on the abandoned branch must not reach the engine."""
        c = self.c
        enter_concentration_dose(c, dose="5", concentration="10")
        self.assertEqual(c.back().step, EntryStep.CONCENTRATION_INPUT)
        self.assertEqual(c.back().step, EntryStep.MEDICATION_SOURCE)

        c.edit_field(FieldName.MEDICATION_SOURCE, "totalAmount")
        c.advance()
        c.edit_field(FieldName.TOTAL_AMOUNT, "10")
        c.advance()
        c.edit_field(FieldName.SOLUTION_VOLUME, "4")
        state = c.advance()
        self.assertEqual(state.step, EntryStep.INSTRUMENT)
        self.assertIsNone(c.build_request().concentration)

        state = c.advance()
        print(f"\nVolume after branch switch: {state.last_result.computed_volume}")
        self.assertIsNone(state.last_result.error)
        self.assertAlmostEqual(state.last_result.computed_concentration, 2.5)
        self.assertAlmostEqual(state.last_result.computed_volume, 2.0)

    def test_24_switching_to_concentration_drops_old_vial_amount(self):
        c = self.c
        c.begin_manual_entry()
        c.edit_field(FieldName.DOSE, "50")
        c.advance()
        c.edit_field(FieldName.MEDICATION_SOURCE, "totalAmount")
        c.advance()
        c.edit_field(FieldName.TOTAL_AMOUNT, "2")
        self.assertEqual(c.advance().step, EntryStep.RECONSTITUTION)
        self.assertEqual(c.back().step, EntryStep.TOTAL_AMOUNT_INPUT)
        self.assertEqual(c.back().step, EntryStep.MEDICATION_SOURCE)

        c.edit_field(FieldName.MEDICATION_SOURCE, "concentration")
        c.advance()
        c.edit_field(FieldName.CONCENTRATION, "25")
        self.assertEqual(c.advance().step, EntryStep.INSTRUMENT)
        request = c.build_request()
        self.assertIsNone(request.total_amount)
        self.assertIsNone(request.solution_volume)

        state = c.advance()
        self.assertIsNone(state.last_result.error)
        self.assertAlmostEqual(state.last_result.computed_volume, 2.0)

    def test_25_skipped_reconstitution_leaves_back_path(self):
        c = self.c
        c.begin_manual_entry()
        c.edit_field(FieldName.DOSE, "5")
        c.advance()
        c.edit_field(FieldName.MEDICATION_SOURCE, "totalAmount")
        c.advance()
        c.edit_field(FieldName.TOTAL_AMOUNT, "10")
        c.advance()
        c.edit_field(FieldName.SOLUTION_VOLUME, "2")
        self.assertEqual(c.advance().step, EntryStep.INSTRUMENT)
        self.assertEqual(c.back().step, EntryStep.RECONSTITUTION)
        self.assertEqual(c.back().step, EntryStep.TOTAL_AMOUNT_INPUT)

        # Solution volume is known now, so this pass goes straight to Instrument
        state = c.advance()
        self.assertEqual(state.step, EntryStep.INSTRUMENT)
        self.assertFalse(state.reconstitution_visited)
        self.assertEqual(c.back().step, EntryStep.TOTAL_AMOUNT_INPUT)

    def test_26_watchdog_expires_abandoned_session(self):
        enter_concentration_dose(self.c)
        expired = threading.Event()
        watchdog = IdleWatchdog(self.c, interval=0.01, retention=1800, on_expired=expired.set).start()
        try:
            self.clock.tick(1000)
            deadline = time.time() + 2.0
            while self.c.state.health != Health.RECOVERING and time.time() < deadline:
                time.sleep(0.01)
            self.assertEqual(self.c.state.health, Health.RECOVERING)
            self.assertFalse(expired.is_set())

            # The reset itself is not activity
            self.clock.tick(1000)
            self.assertTrue(expired.wait(2.0))
            deadline = time.time() + 2.0
            while watchdog.running and time.time() < deadline:
                time.sleep(0.01)
            self.assertFalse(watchdog.running)
        finally:
            watchdog.stop(timeout=1.0)

if __name__ == '__main__':
    unittest.main()
