# main.py

import logging
import uuid
from typing import Dict, List, Optional
from datetime import datetime
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

# Import Data Models & Logic
from constants import VERSION, MEDICAL_DISCLAIMER, WORKFLOW_CONSTANTS, ConcentrationUnit, DoseUnit, InstrumentFamily
from collaborators import InMemoryDoseRepository, LoggingAnalytics
from dose_engine import DoseCalculationEngine
from guards import DIRECT_CONCENTRATION_UNIT, StepGuard
from instruments import InstrumentCatalog, SyringeProfile, load_default_catalog
from models import (
    CalculationResult,
    DoseRequest,
    EngagementCounters,
    EntryMode,
    Instrument,
    NextAction,
    OutcomeFeeling,
    UnknownInstrumentError,
    WorkflowState,
)
from workflow import EntryWorkflowCoordinator, IdleWatchdog

# --- 1. CONFIGURATION & LOGGING ---
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("doseflow-api")

app = FastAPI(
    title="DoseFlow API",
    version=VERSION,
    description="Dose volume calculator and guided manual-entry workflow. \n\n"
                "**WARNING**: Calculation aid only. Always verify against the prescription.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], # Tighten this in real production!
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Shared by every session of this process
catalog: InstrumentCatalog = load_default_catalog()
dose_repository = InMemoryDoseRepository()
analytics = LoggingAnalytics()
counters = EngagementCounters()

sessions: Dict[str, EntryWorkflowCoordinator] = {}
watchdogs: Dict[str, IdleWatchdog] = {}

# --- 2. REQUEST SCHEMAS ---

class SessionCreate(BaseModel):
    entry_mode: Optional[EntryMode] = Field(None, description="Start manual entry or capture right away")

class FieldEdit(BaseModel):
    name: str = Field(..., description="Field name, e.g. 'dose' or 'concentration_unit'")
    value: Optional[str] = None

class CaptureRequest(BaseModel):
    fields: Dict[str, str] = Field(default_factory=dict, description="Fields recognised on the label")

class NextActionRequest(BaseModel):
    action: NextAction

class SiteRequest(BaseModel):
    site_id: Optional[str] = Field(None, description="Omit to skip site selection")

class OrientationRequest(BaseModel):
    dont_show_again: bool = False

class SurveyRequest(BaseModel):
    responses: Optional[Dict[str, str]] = Field(None, description="Omit to skip the survey")

class OutcomeRequest(BaseModel):
    feeling: Optional[OutcomeFeeling] = Field(None, description="Omit to skip")
    notes: Optional[str] = Field(None, max_length=500)

class CalculateRequest(BaseModel):
    # No range limits here: bad numbers come back as calculation errors, not 422s
    dose_value: Optional[float] = None
    dose_unit: DoseUnit
    concentration_unit: Optional[ConcentrationUnit] = None
    concentration: Optional[float] = None
    total_amount: Optional[float] = None
    solution_volume: Optional[float] = None
    instrument_family: Optional[InstrumentFamily] = None
    instrument_label: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "dose_value": 2000, "dose_unit": "mcg", "concentration": 2,
                "concentration_unit": "mg/ml", "instrument_family": "Insulin",
                "instrument_label": "1 ml"
            }
        }

# --- 3. RESPONSE SCHEMAS ---

class InstrumentView(BaseModel):
    family: InstrumentFamily
    label: str
    capacity: float
    capacity_ml: float
    scale_unit: str
    markings: List[float]

class ResultView(BaseModel):
    computed_volume: Optional[float]
    recommended_marking: Optional[float]
    error: Optional[str] = None
    fatal: bool = False
    message: Optional[str] = None
    computed_concentration: Optional[float] = None
    scale_value: Optional[float] = None
    scale_unit: Optional[str] = None

class FeedbackView(BaseModel):
    stage: Optional[str]
    pending_stages: List[str]
    next_action: str
    suggested_site: Optional[str] = None
    injection_site: Optional[str] = None
    completed: bool = False

class SessionResponse(BaseModel):
    session_id: str
    screen: str
    step: str
    health: str
    entry_mode: str
    step_valid: bool
    fields: Dict[str, str]
    hints: Dict[str, str]
    instrument: Optional[InstrumentView] = None
    instrument_is_default: bool = False
    result: Optional[ResultView] = None
    feedback: Optional[FeedbackView] = None

class DoseLogView(BaseModel):
    id: str
    timestamp: datetime
    substance_name: str
    dose_value: float
    dose_unit: str
    computed_volume: float
    recommended_marking: float
    scale_unit: str
    instrument: str
    injection_site: Optional[str] = None
    outcome: Optional[str] = None
    notes: Optional[str] = None

def _instrument_view(instrument: Optional[Instrument]) -> Optional[InstrumentView]:
    if instrument is None:
        return None
    return InstrumentView(
        family=instrument.family,
        label=instrument.label,
        capacity=instrument.capacity,
        capacity_ml=instrument.capacity_ml,
        scale_unit=instrument.scale_unit,
        markings=list(instrument.markings),
    )

def _result_view(result: Optional[CalculationResult]) -> Optional[ResultView]:
    if result is None:
        return None
    return ResultView(
        computed_volume=result.computed_volume,
        recommended_marking=result.recommended_marking,
        error=result.error.value if result.error else None,
        fatal=result.is_failure,
        message=result.message,
        computed_concentration=result.computed_concentration,
        scale_value=result.scale_value,
        scale_unit=result.scale_unit,
    )

def _session_view(session_id: str, coordinator: EntryWorkflowCoordinator, state: WorkflowState) -> SessionResponse:
    feedback = None
    if state.feedback is not None:
        ctx = state.feedback
        feedback = FeedbackView(
            stage=ctx.stage.value if ctx.stage else None,
            pending_stages=[s.value for s in ctx.pending_stages],
            next_action=ctx.next_action.value,
            suggested_site=ctx.suggested_site,
            injection_site=ctx.injection_site,
            completed=ctx.completed,
        )
    return SessionResponse(
        session_id=session_id,
        screen=state.screen.value,
        step=state.step.value,
        health=state.health.value,
        entry_mode=state.entry_mode.value,
        step_valid=StepGuard.is_valid(state.step, state),
        fields={name.value: value for name, value in state.fields.items()},
        hints=dict(state.hints),
        instrument=_instrument_view(state.instrument),
        instrument_is_default=state.instrument_is_default,
        result=_result_view(state.last_result),
        feedback=feedback,
    )

def _get_coordinator(session_id: str) -> EntryWorkflowCoordinator:
    coordinator = sessions.get(session_id)
    if coordinator is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    return coordinator

def _drop_session(session_id: str) -> bool:
    """Forgets a session and stops its watchdog. False if it was already gone."""
    coordinator = sessions.pop(session_id, None)
    watchdog = watchdogs.pop(session_id, None)
    if watchdog:
        watchdog.stop(timeout=1.0)
    if coordinator is None:
        return False
    logger.info(f"Session dropped: {session_id}")
    return True

def _drive(session_id: str, operation, *args) -> SessionResponse:
    """Runs one coordinator transition with the API error policy."""
    coordinator = _get_coordinator(session_id)
    try:
        state = operation(coordinator, *args)
        return _session_view(session_id, coordinator, state)

    except ValueError as e:
        logger.warning(f"Workflow Validation Error: {str(e)}")
        raise HTTPException(status_code=422, detail=f"Workflow Validation Error: {str(e)}")

    except Exception as e:
        logger.error(f"Internal Workflow Failure: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal Workflow Error")

# --- 4. ENDPOINTS ---

@app.get("/")
def read_root():
    return {"status": "active", "message": "DoseFlow API is running successfully!", "disclaimer": MEDICAL_DISCLAIMER}

@app.get("/health")
def health_check():
    """Liveness probe"""
    return {
        "status": "active",
        "version": VERSION,
        "module": "doseflow-engine",
        "sessions": len(sessions),
        "instruments": len(catalog),
    }

# Sessions

@app.post("/sessions", response_model=SessionResponse)
def create_session(request: Optional[SessionCreate] = None):
    session_id = uuid.uuid4().hex
    coordinator = EntryWorkflowCoordinator(
        persistence=dose_repository, analytics=analytics, catalog=catalog, counters=counters,
    )
    sessions[session_id] = coordinator
    watchdogs[session_id] = IdleWatchdog(
        coordinator,
        retention=WORKFLOW_CONSTANTS.SESSION_RETENTION_SECONDS,
        on_expired=lambda: _drop_session(session_id),
    ).start()
    logger.info(f"Session created: {session_id}")

    mode = request.entry_mode if request else None
    if mode == EntryMode.MANUAL:
        return _drive(session_id, EntryWorkflowCoordinator.begin_manual_entry)
    if mode == EntryMode.SCAN:
        return _drive(session_id, EntryWorkflowCoordinator.begin_capture)
    return _session_view(session_id, coordinator, coordinator.state)

@app.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session(session_id: str):
    coordinator = _get_coordinator(session_id)
    coordinator.check_staleness()
    return _session_view(session_id, coordinator, coordinator.state)

@app.delete("/sessions/{session_id}")
def close_session(session_id: str):
    if not _drop_session(session_id):
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    return {"closed": session_id}

@app.post("/sessions/{session_id}/manual", response_model=SessionResponse)
def start_manual_entry(session_id: str):
    return _drive(session_id, EntryWorkflowCoordinator.begin_manual_entry)

@app.post("/sessions/{session_id}/fields", response_model=SessionResponse)
def edit_field(session_id: str, edit: FieldEdit):
    return _drive(session_id, EntryWorkflowCoordinator.edit_field, edit.name, edit.value)

@app.post("/sessions/{session_id}/advance", response_model=SessionResponse)
def advance(session_id: str):
    return _drive(session_id, EntryWorkflowCoordinator.advance)

@app.post("/sessions/{session_id}/back", response_model=SessionResponse)
def back(session_id: str):
    return _drive(session_id, EntryWorkflowCoordinator.back)

@app.post("/sessions/{session_id}/reset", response_model=SessionResponse)
def reset(session_id: str):
    return _drive(session_id, EntryWorkflowCoordinator.reset)

@app.post("/sessions/{session_id}/capture", response_model=SessionResponse)
def apply_capture(session_id: str, capture: CaptureRequest):
    """Fields read from a label photo, handed to manual entry for review."""
    return _drive(session_id, EntryWorkflowCoordinator.apply_capture, capture.fields)

@app.post("/sessions/{session_id}/next-action", response_model=SessionResponse)
def choose_next_action(session_id: str, request: NextActionRequest):
    return _drive(session_id, EntryWorkflowCoordinator.choose_next_action, request.action)

# Feedback

@app.post("/sessions/{session_id}/feedback/site", response_model=SessionResponse)
def feedback_site(session_id: str, request: SiteRequest):
    if request.site_id is None:
        return _drive(session_id, EntryWorkflowCoordinator.skip_injection_site)
    return _drive(session_id, EntryWorkflowCoordinator.select_injection_site, request.site_id)

@app.post("/sessions/{session_id}/feedback/orientation", response_model=SessionResponse)
def feedback_orientation(session_id: str, request: OrientationRequest):
    return _drive(session_id, EntryWorkflowCoordinator.respond_orientation, request.dont_show_again)

@app.post("/sessions/{session_id}/feedback/survey", response_model=SessionResponse)
def feedback_survey(session_id: str, request: SurveyRequest):
    if request.responses is None:
        return _drive(session_id, EntryWorkflowCoordinator.skip_survey)
    return _drive(session_id, EntryWorkflowCoordinator.submit_survey, request.responses)

@app.post("/sessions/{session_id}/feedback/outcome", response_model=SessionResponse)
def feedback_outcome(session_id: str, request: OutcomeRequest):
    if request.feeling is None:
        return _drive(session_id, EntryWorkflowCoordinator.skip_outcome)
    return _drive(session_id, EntryWorkflowCoordinator.submit_outcome, request.feeling, request.notes)

@app.post("/sessions/{session_id}/feedback/skip-all", response_model=SessionResponse)
def feedback_skip_all(session_id: str):
    return _drive(session_id, EntryWorkflowCoordinator.skip_all_feedback)

@app.post("/sessions/{session_id}/feedback/cancel", response_model=SessionResponse)
def feedback_cancel(session_id: str):
    return _drive(session_id, EntryWorkflowCoordinator.cancel_feedback)

# Stateless calculation & configuration

@app.post("/calculate", response_model=ResultView)
def calculate(request: CalculateRequest):
    """
    One-shot calculation without a workflow session.
    Calculation errors are returned in the body, not as HTTP errors.
    """
    try:
        instrument = None
        if request.instrument_family is not None and request.instrument_label:
            instrument = catalog.get(request.instrument_family, request.instrument_label)

        dose_request = DoseRequest(
            dose_value=request.dose_value,
            dose_unit=request.dose_unit,
            concentration_unit=request.concentration_unit or DIRECT_CONCENTRATION_UNIT[request.dose_unit],
            concentration=request.concentration,
            total_amount=request.total_amount,
            solution_volume=request.solution_volume,
            instrument=instrument,
        )
        logger.info(f"Calculating {request.dose_value} {request.dose_unit.value} "
                    f"on {request.instrument_family.value if request.instrument_family else 'no'} syringe")
        return _result_view(DoseCalculationEngine.calculate_dose(dose_request))

    except UnknownInstrumentError as e:
        logger.warning(f"Unknown instrument: {e.args[0]}")
        raise HTTPException(status_code=422, detail=e.args[0])

    except Exception as e:
        logger.error(f"Internal Engine Failure: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal Dose Engine Error")

@app.get("/units/{dose_unit}/concentration-units", response_model=List[str])
def compatible_concentration_units(dose_unit: DoseUnit):
    return [unit.value for unit in DoseCalculationEngine.compatible_concentration_units(dose_unit)]

@app.get("/instruments", response_model=List[InstrumentView])
def list_instruments(family: Optional[InstrumentFamily] = None):
    return [_instrument_view(i) for i in catalog if family is None or i.family == family]

@app.post("/instruments/profiles", response_model=InstrumentView)
def add_syringe_profile(profile: SyringeProfile):
    """Registers a custom syringe; it becomes selectable in every session."""
    try:
        instrument = catalog.add_profile(profile)
        logger.info(f"Syringe profile added: {profile.profile_name} ({instrument.family.value} {instrument.label})")
        return _instrument_view(instrument)
    except ValueError as e:
        logger.warning(f"Profile Validation Error: {str(e)}")
        raise HTTPException(status_code=422, detail=f"Profile Validation Error: {str(e)}")

# Dose log

@app.get("/doses", response_model=List[DoseLogView])
def list_doses():
    return [
        DoseLogView(
            id=log.id,
            timestamp=log.timestamp,
            substance_name=log.summary.substance_name,
            dose_value=log.summary.dose_value,
            dose_unit=log.summary.dose_unit.value,
            computed_volume=log.summary.computed_volume,
            recommended_marking=log.summary.recommended_marking,
            scale_unit=log.summary.scale_unit,
            instrument=f"{log.summary.instrument_family.value} {log.summary.instrument_label}",
            injection_site=log.summary.injection_site,
            outcome=log.summary.outcome.value if log.summary.outcome else None,
            notes=log.summary.notes,
        )
        for log in dose_repository.list_prior_doses()
    ]

@app.delete("/doses/{dose_id}")
def delete_dose(dose_id: str):
    if not dose_repository.delete_dose(dose_id):
        raise HTTPException(status_code=404, detail=f"Unknown dose log: {dose_id}")
    return {"deleted": dose_id}
