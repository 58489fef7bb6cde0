"""
DoseFlow: Entry Workflow Coordinator
====================================
The only owner of a WorkflowState. Every public method:
  1. takes the lock (shared with the idle watchdog),
  2. resets a stale session and returns without applying the call,
  3. otherwise applies one transition and returns the updated state.

Refused transitions never raise: the state is left as it was and a hint is
recorded for the field the user has to fix.
"""

import functools
import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple, Union

from collaborators import (
    AnalyticsSink,
    DosePersistence,
    InMemoryAnalytics,
    InMemoryDoseRepository,
    best_effort,
)
from constants import ANALYTICS_EVENTS, WORKFLOW_CONSTANTS, InstrumentFamily
from dose_engine import DoseCalculationEngine
from feedback import FeedbackSequencer
from guards import (
    FORM_HINT,
    StepGuard,
    effective_concentration_unit,
    parse_enum,
    read_concentration_unit,
    read_dose_unit,
    read_medication_source,
    read_positive,
)
from instruments import InstrumentCatalog, load_default_catalog
from models import (
    DoseRequest,
    DoseSummary,
    EngagementCounters,
    EntryMode,
    EntryStep,
    FeedbackStageError,
    FieldName,
    Health,
    MedicationSource,
    NextAction,
    OutcomeFeeling,
    Screen,
    WorkflowState,
)
from routing import StepRouter

logger = logging.getLogger("doseflow.workflow")

INSTRUMENT_FIELDS = (FieldName.INSTRUMENT_FAMILY, FieldName.INSTRUMENT_VOLUME)
SCAN_HINT = "Detected from scan. Please double-check."

def _transition(method):
    """Lock, staleness check, activity stamp."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            now = self._clock()
            self._last_call = now
            if self._expire_if_stale(now):
                return self.state
            self.state.last_activity = now
            return method(self, *args, **kwargs)
    return wrapper

class EntryWorkflowCoordinator:
    def __init__(self,
                 persistence: Optional[DosePersistence] = None,
                 analytics: Optional[AnalyticsSink] = None,
                 catalog: Optional[InstrumentCatalog] = None,
                 counters: Optional[EngagementCounters] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.persistence = persistence or InMemoryDoseRepository()
        self.analytics = analytics or InMemoryAnalytics()
        self.catalog = catalog or load_default_catalog()
        self.counters = counters or EngagementCounters()
        self.feedback = FeedbackSequencer(self.persistence, self.analytics, self.counters)
        self._clock = clock
        self._lock = threading.RLock()
        self.state = WorkflowState(last_activity=self._clock())
        self._last_call = self.state.last_activity

    # --- Staleness ---

    def check_staleness(self, now: Optional[float] = None) -> bool:
        """Resets the session if it has been idle too long. Returns True if it did."""
        with self._lock:
            return self._expire_if_stale(self._clock() if now is None else now)

    def idle_seconds(self, now: Optional[float] = None) -> float:
        """Seconds since the last public call. Staleness resets do not count as activity."""
        with self._lock:
            return (self._clock() if now is None else now) - self._last_call

    def _expire_if_stale(self, now: float) -> bool:
        # Nothing is in progress on the intro screen
        if self.state.screen == Screen.INTRO:
            return False
        idle = now - self.state.last_activity
        if idle <= WORKFLOW_CONSTANTS.STALE_SESSION_SECONDS:
            return False

        previous = self.state
        screen = Screen.MANUAL_ENTRY if previous.screen in (Screen.MANUAL_ENTRY, Screen.FEEDBACK) else previous.screen
        self.state = WorkflowState(screen=screen, step=EntryStep.DOSE, health=Health.RECOVERING,
                                   last_activity=now, entry_mode=previous.entry_mode)
        logger.warning(f"Session idle for {idle:.0f}s at {previous.screen.value}/{previous.step.value}; state reset")
        self._emit(ANALYTICS_EVENTS.SESSION_RECOVERED, {
            "idle_seconds": round(idle),
            "step": previous.step.value,
        })
        return True

    # --- Entry points ---

    @_transition
    def reset(self) -> WorkflowState:
        self._reset(Screen.INTRO)
        return self.state

    @_transition
    def begin_manual_entry(self) -> WorkflowState:
        self._reset(Screen.MANUAL_ENTRY, EntryMode.MANUAL)
        self._emit(ANALYTICS_EVENTS.MANUAL_ENTRY_STARTED, {"source": EntryMode.MANUAL.value})
        return self.state

    @_transition
    def begin_capture(self) -> WorkflowState:
        self._reset(Screen.SCAN, EntryMode.SCAN)
        return self.state

    @_transition
    def apply_capture(self, prefill: Dict[str, str]) -> WorkflowState:
        """Hands recognised label fields over to manual entry for review."""
        self._reset(Screen.MANUAL_ENTRY, EntryMode.SCAN)
        state = self.state
        for key, value in (prefill or {}).items():
            name = parse_enum(FieldName, key)
            if name is None:
                logger.debug(f"Ignoring unknown capture field '{key}'")
                continue
            if value is None or str(value).strip() == "":
                continue
            state.fields[name] = str(value).strip()
            state.hints[name.value] = SCAN_HINT
        if any(state.raw(f) for f in INSTRUMENT_FIELDS):
            self._resolve_instrument()
        self._refresh_derived()
        self._emit(ANALYTICS_EVENTS.MANUAL_ENTRY_STARTED, {"source": EntryMode.SCAN.value})
        logger.info(f"Capture applied with fields {sorted(k.value for k, v in state.fields.items() if v)}")
        return state

    # --- Manual entry ---

    @_transition
    def edit_field(self, name: Union[FieldName, str], raw: Optional[str]) -> WorkflowState:
        state = self.state
        field_name = name if isinstance(name, FieldName) else parse_enum(FieldName, name)
        if field_name is None:
            return self._refuse(FORM_HINT, f"Unknown field '{name}'.")
        if state.screen != Screen.MANUAL_ENTRY:
            return self._refuse(FORM_HINT, "No dose entry in progress.")
        if state.step == EntryStep.RESULT:
            return self._refuse(FORM_HINT, "This dose is final. Go back to change it.")

        state.fields[field_name] = "" if raw is None else str(raw)
        state.hints.pop(field_name.value, None)
        state.hints.pop(FORM_HINT, None)
        state.last_result = None

        if field_name == FieldName.MEDICATION_SOURCE:
            state.reconstitution_visited = False
        if field_name in INSTRUMENT_FIELDS:
            state.instrument_is_default = False
            self._resolve_instrument()
        self._refresh_derived()
        return state

    @_transition
    def advance(self) -> WorkflowState:
        state = self.state
        if state.screen != Screen.MANUAL_ENTRY:
            return self._refuse(FORM_HINT, "No dose entry in progress.")
        if state.step == EntryStep.RESULT:
            return self._refuse(FORM_HINT, "Choose what to do next.")

        refused = StepGuard.check(state.step, state)
        if refused:
            hint_key, message = refused
            logger.warning(f"Advance refused at {state.step.value}: {message}")
            return self._refuse(hint_key, message)

        if state.step == EntryStep.INSTRUMENT:
            # Errors are shown on the confirmation step, never blocking
            state.last_result = DoseCalculationEngine.calculate_dose(self.build_request())
            target = EntryStep.PRE_CONFIRMATION
        else:
            target = StepRouter.next_step(state)

        state.hints.clear()
        state.health = Health.HEALTHY
        self._enter(target)
        return state

    @_transition
    def back(self) -> WorkflowState:
        state = self.state
        if state.screen == Screen.FEEDBACK:
            return self._refuse(FORM_HINT, "Finish or cancel the feedback first.")
        if state.screen != Screen.MANUAL_ENTRY:
            self._reset(Screen.INTRO)
            return self.state

        target = StepRouter.previous_step(state)
        if target is None:
            logger.info("Back from the first step, leaving manual entry")
            self._reset(Screen.INTRO)
            return self.state

        if target not in (EntryStep.PRE_CONFIRMATION, EntryStep.RESULT):
            state.last_result = None
        state.hints.clear()
        logger.info(f"Back: {state.step.value} -> {target.value}")
        state.step = target
        return state

    @_transition
    def choose_next_action(self, action: NextAction) -> WorkflowState:
        """Leaves the result by opening feedback; the action itself runs when feedback completes."""
        state = self.state
        if state.screen != Screen.MANUAL_ENTRY or state.step != EntryStep.RESULT:
            return self._refuse(FORM_HINT, "A next action can only be chosen from the result.")
        result = state.last_result
        if result is None or result.is_failure:
            return self._refuse(FORM_HINT, "There is no successful calculation to finish.")

        state.feedback = self.feedback.open(self._build_summary(), action)
        state.screen = Screen.FEEDBACK
        return state

    # --- Feedback ---

    @_transition
    def select_injection_site(self, site_id: str) -> WorkflowState:
        return self._feedback_step(self.feedback.select_site, site_id)

    @_transition
    def skip_injection_site(self) -> WorkflowState:
        return self._feedback_step(self.feedback.skip_site)

    @_transition
    def respond_orientation(self, dont_show_again: bool = False) -> WorkflowState:
        return self._feedback_step(self.feedback.respond_orientation, dont_show_again)

    @_transition
    def submit_survey(self, responses: Dict[str, str]) -> WorkflowState:
        return self._feedback_step(self.feedback.submit_survey, responses)

    @_transition
    def skip_survey(self) -> WorkflowState:
        return self._feedback_step(self.feedback.skip_survey)

    @_transition
    def submit_outcome(self, feeling: OutcomeFeeling, notes: Optional[str] = None) -> WorkflowState:
        return self._feedback_step(self.feedback.submit_outcome, feeling, notes)

    @_transition
    def skip_outcome(self) -> WorkflowState:
        return self._feedback_step(self.feedback.skip_outcome)

    @_transition
    def skip_all_feedback(self) -> WorkflowState:
        return self._feedback_step(self.feedback.skip_all)

    @_transition
    def cancel_feedback(self) -> WorkflowState:
        state = self.state
        if state.screen != Screen.FEEDBACK or state.feedback is None:
            return self._refuse(FORM_HINT, "No feedback in progress.")
        try:
            self.feedback.cancel(state.feedback)
        except FeedbackStageError as e:
            return self._refuse(FORM_HINT, str(e))
        state.feedback = None
        state.screen = Screen.MANUAL_ENTRY
        return state

    def _feedback_step(self, response, *args) -> WorkflowState:
        state = self.state
        ctx = state.feedback
        if state.screen != Screen.FEEDBACK or ctx is None:
            return self._refuse(FORM_HINT, "No feedback in progress.")
        try:
            completed = response(ctx, *args)
        except FeedbackStageError as e:
            logger.warning(f"Feedback response refused: {e}")
            return self._refuse(FORM_HINT, str(e))
        state.hints.clear()
        if completed:
            self._execute(ctx.next_action)
        return self.state

    def _execute(self, action: NextAction) -> None:
        """The pending next action, run once when feedback completes."""
        logger.info(f"Executing next action: {action.value}")
        if action == NextAction.GO_HOME:
            self._reset(Screen.INTRO)
        elif action == NextAction.SCAN_AGAIN:
            self._reset(Screen.SCAN, EntryMode.SCAN)
        elif self.state.entry_mode == EntryMode.SCAN:
            self._reset(Screen.SCAN, EntryMode.SCAN)
        else:
            self._reset(Screen.MANUAL_ENTRY, EntryMode.MANUAL)
            self._emit(ANALYTICS_EVENTS.MANUAL_ENTRY_STARTED, {"source": EntryMode.MANUAL.value})

    # --- Queries ---

    def is_valid(self, step: Optional[EntryStep] = None) -> bool:
        with self._lock:
            return StepGuard.is_valid(step or self.state.step, self.state)

    def build_request(self) -> DoseRequest:
        """Engine input from the current fields. Numbers come from the derived values."""
        state = self.state
        concentration, total_amount, solution_volume = self._source_values()
        return DoseRequest(
            dose_value=state.dose_value,
            dose_unit=read_dose_unit(state),
            concentration_unit=effective_concentration_unit(state),
            concentration=concentration,
            total_amount=total_amount,
            solution_volume=solution_volume,
            instrument=state.instrument,
        )

    def _source_values(self) -> Tuple[Optional[float], Optional[float], Optional[float]]:
        """(concentration, total_amount, solution_volume) of the chosen medication source only."""
        state = self.state
        source = read_medication_source(state)
        if source == MedicationSource.TOTAL_AMOUNT:
            # Leftover concentration from the other branch must not override total / solution
            return None, state.total_amount, state.solution_volume
        if source == MedicationSource.CONCENTRATION:
            return state.concentration, None, None
        return state.concentration, state.total_amount, state.solution_volume

    # --- Internals ---

    def _enter(self, step: EntryStep) -> None:
        previous = self.state.step
        logger.info(f"Advance: {previous.value} -> {step.value}")
        self.state.step = step
        StepRouter.on_enter(step, self.state, self.catalog, came_from=previous)
        if step == EntryStep.RESULT:
            result = self.state.last_result
            self._emit(ANALYTICS_EVENTS.MANUAL_ENTRY_COMPLETED, {
                "dose_unit": self.state.raw(FieldName.DOSE_UNIT),
                "entry_mode": self.state.entry_mode.value,
                "advisory": bool(result and result.has_advisory),
            })

    def _reset(self, screen: Screen, entry_mode: Optional[EntryMode] = None) -> None:
        previous = self.state
        self.state = WorkflowState(
            screen=screen,
            step=EntryStep.DOSE,
            last_activity=previous.last_activity,
            entry_mode=entry_mode or previous.entry_mode,
        )
        logger.info(f"State reset to {screen.value}")

    def _refuse(self, hint_key: str, message: str) -> WorkflowState:
        self.state.hints[hint_key] = message
        return self.state

    def _resolve_instrument(self) -> None:
        state = self.state
        family = parse_enum(InstrumentFamily, state.raw(FieldName.INSTRUMENT_FAMILY))
        label = state.raw(FieldName.INSTRUMENT_VOLUME).strip()
        if family is None or not label:
            state.instrument = None
            return
        state.instrument = self.catalog.find(family, label)
        if state.instrument is None:
            state.hints[FieldName.INSTRUMENT_VOLUME.value] = f"No {family.value} syringe with capacity '{label}'."

    def _refresh_derived(self) -> None:
        state = self.state
        state.dose_value = read_positive(state, FieldName.DOSE)
        state.concentration = read_positive(state, FieldName.CONCENTRATION)
        state.total_amount = read_positive(state, FieldName.TOTAL_AMOUNT)
        state.solution_volume = read_positive(state, FieldName.SOLUTION_VOLUME)

    def _build_summary(self) -> DoseSummary:
        state = self.state
        result = state.last_result
        instrument = state.instrument
        concentration, total_amount, solution_volume = self._source_values()
        return DoseSummary(
            substance_name=state.raw(FieldName.SUBSTANCE_NAME).strip(),
            dose_value=state.dose_value,
            dose_unit=read_dose_unit(state),
            computed_volume=result.computed_volume,
            recommended_marking=result.recommended_marking,
            scale_unit=result.scale_unit,
            instrument_family=instrument.family,
            instrument_label=instrument.label,
            medication_source=read_medication_source(state),
            concentration=concentration,
            concentration_unit=read_concentration_unit(state) or effective_concentration_unit(state),
            total_amount=total_amount,
            solution_volume=solution_volume,
            computed_concentration=result.computed_concentration,
        )

    def _emit(self, name: str, params: Optional[Dict] = None) -> None:
        best_effort(f"analytics event {name}", self.analytics.log_event, name, params or {})

class IdleWatchdog:
    """
    Background thread running the staleness check at a fixed interval.

    With a retention, a session nobody has called for that long is handed to
    on_expired and the thread ends.
    """

    def __init__(self, coordinator: EntryWorkflowCoordinator,
                 interval: float = WORKFLOW_CONSTANTS.WATCHDOG_INTERVAL_SECONDS,
                 retention: Optional[float] = None,
                 on_expired: Optional[Callable[[], None]] = None):
        self.coordinator = coordinator
        self.interval = interval
        self.retention = retention
        self.on_expired = on_expired
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> 'IdleWatchdog':
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="doseflow-idle-watchdog", daemon=True)
            self._thread.start()
        return self

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        thread = self._thread
        # on_expired may stop the watchdog from its own thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                if self.coordinator.check_staleness():
                    continue
                if self.retention is not None and self.coordinator.idle_seconds() > self.retention:
                    logger.info(f"Session idle beyond {self.retention:.0f}s retention, expiring")
                    self._stop.set()
                    if self.on_expired is not None:
                        self.on_expired()
                    return
            except Exception:
                logger.error("Idle watchdog check failed", exc_info=True)
