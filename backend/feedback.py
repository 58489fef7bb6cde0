"""
DoseFlow: Post-Result Feedback
==============================
Runs between "the user chose what to do next" and actually doing it:
injection site -> orientation prompt -> PMF survey -> outcome feedback.

Which optional stages appear is decided once, when the context opens, from
the EngagementCounters. Every submit and skip path lands on the same next
stage, and the last one completes the context: the dose is logged exactly
once and the caller may then execute the pending action.
"""

import dataclasses
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from collaborators import AnalyticsSink, DosePersistence, best_effort
from constants import ANALYTICS_EVENTS, FEEDBACK_CONSTANTS, INJECTION_SITES
from models import (
    DoseLog,
    DoseSummary,
    EngagementCounters,
    FeedbackContext,
    FeedbackStage,
    FeedbackStageError,
    LogOutcome,
    NextAction,
    OutcomeFeeling,
)

logger = logging.getLogger("doseflow.feedback")

SITE_IDS = [site_id for site_id, _, _ in INJECTION_SITES]

class InjectionSiteRotation:
    """Site suggestions from the dose history. History order does not matter."""

    @staticmethod
    def is_known(site_id: str) -> bool:
        return site_id in SITE_IDS

    @staticmethod
    def last_used(site_id: str, history: List[DoseLog]) -> Optional[datetime]:
        dates = [log.timestamp for log in history if log.summary.injection_site == site_id]
        return max(dates) if dates else None

    @staticmethod
    def was_used_recently(site_id: str, history: List[DoseLog], now: datetime,
                          days: int = FEEDBACK_CONSTANTS.RECENT_SITE_DAYS) -> bool:
        cutoff = now - timedelta(days=days)
        return any(log.summary.injection_site == site_id and log.timestamp > cutoff for log in history)

    @staticmethod
    def least_recently_used(history: List[DoseLog]) -> str:
        """
        First never-used site in grid order; if all were used, the one whose
        last use is oldest.
        """
        usage: Dict[str, datetime] = {}
        for log in history:
            site = log.summary.injection_site
            if site and (site not in usage or log.timestamp > usage[site]):
                usage[site] = log.timestamp

        for site_id in SITE_IDS:
            if site_id not in usage:
                return site_id
        return min(SITE_IDS, key=lambda s: usage[s])

    @staticmethod
    def label(site_id: str) -> str:
        for sid, _, short in INJECTION_SITES:
            if sid == site_id:
                return short
        raise ValueError(f"Unknown injection site: {site_id}")

class FeedbackSequencer:
    """
    Drives one FeedbackContext at a time. The counters object is shared with
    the coordinator and outlives every context.
    """

    def __init__(self, persistence: DosePersistence, analytics: AnalyticsSink,
                 counters: EngagementCounters):
        self.persistence = persistence
        self.analytics = analytics
        self.counters = counters

    # --- Opening ---

    def plan_stages(self) -> List[FeedbackStage]:
        c = self.counters
        stages = [FeedbackStage.INJECTION_SITE]
        with c.lock:
            if c.orientation_show_count < FEEDBACK_CONSTANTS.ORIENTATION_MAX_SHOWS and not c.orientation_suppressed:
                stages.append(FeedbackStage.ORIENTATION)
            if c.session_count == FEEDBACK_CONSTANTS.PMF_TRIGGER_SESSION_COUNT and not c.pmf_shown:
                stages.append(FeedbackStage.PMF_SURVEY)
        stages.append(FeedbackStage.OUTCOME_FEEDBACK)
        return stages

    def open(self, summary: DoseSummary, next_action: NextAction) -> FeedbackContext:
        # Count and plan together so concurrent sessions never see the same count
        with self.counters.lock:
            self.counters.session_count += 1
            session = self.counters.session_count
            stages = self.plan_stages()
        ctx = FeedbackContext(summary=summary, next_action=next_action, stage=None,
                              pending_stages=stages)
        ctx.suggested_site = self.suggest_site()
        self._advance(ctx)
        logger.info(f"Feedback opened (session {session}): "
                    f"{[s.value for s in [ctx.stage] + ctx.pending_stages]}")
        return ctx

    def suggest_site(self) -> Optional[str]:
        history = best_effort("list_prior_doses", self.persistence.list_prior_doses)
        if history is None:
            return None
        return InjectionSiteRotation.least_recently_used(history)

    def cancel(self, ctx: FeedbackContext) -> None:
        """Only allowed at the first stage; the session does not count."""
        self._require(ctx, FeedbackStage.INJECTION_SITE)
        with self.counters.lock:
            self.counters.session_count = max(0, self.counters.session_count - 1)
        logger.info("Feedback cancelled at injection site selection")

    # --- Stage responses (each returns True once the context has completed) ---

    def select_site(self, ctx: FeedbackContext, site_id: str) -> bool:
        self._require(ctx, FeedbackStage.INJECTION_SITE)
        if not InjectionSiteRotation.is_known(site_id):
            raise FeedbackStageError(f"Unknown injection site: {site_id}")
        ctx.injection_site = site_id
        self._emit(ANALYTICS_EVENTS.INJECTION_SITE_SELECTED, {
            "site": site_id,
            "followed_suggestion": site_id == ctx.suggested_site,
        })
        return self._advance(ctx)

    def skip_site(self, ctx: FeedbackContext) -> bool:
        self._require(ctx, FeedbackStage.INJECTION_SITE)
        return self._advance(ctx)

    def respond_orientation(self, ctx: FeedbackContext, dont_show_again: bool = False) -> bool:
        self._require(ctx, FeedbackStage.ORIENTATION)
        if dont_show_again:
            with self.counters.lock:
                self.counters.orientation_suppressed = True
            self._emit(ANALYTICS_EVENTS.ORIENTATION_DONT_SHOW_AGAIN)
        return self._advance(ctx)

    def submit_survey(self, ctx: FeedbackContext, responses: Dict[str, str]) -> bool:
        self._require(ctx, FeedbackStage.PMF_SURVEY)
        ctx.survey_responses = dict(responses)
        best_effort("save_survey_response", self.persistence.save_survey_response, ctx.survey_responses)
        self._emit(ANALYTICS_EVENTS.PMF_SURVEY_COMPLETED, {"answered": len(ctx.survey_responses)})
        return self._advance(ctx)

    def skip_survey(self, ctx: FeedbackContext) -> bool:
        self._require(ctx, FeedbackStage.PMF_SURVEY)
        self._emit(ANALYTICS_EVENTS.PMF_SURVEY_SKIPPED)
        return self._advance(ctx)

    def submit_outcome(self, ctx: FeedbackContext, feeling: OutcomeFeeling, notes: Optional[str] = None) -> bool:
        self._require(ctx, FeedbackStage.OUTCOME_FEEDBACK)
        ctx.outcome = feeling
        ctx.outcome_notes = (notes or "").strip() or None
        self._emit(ANALYTICS_EVENTS.FEEDBACK_SUBMITTED, {
            "feeling": feeling.value,
            "has_notes": ctx.outcome_notes is not None,
        })
        return self._advance(ctx)

    def skip_outcome(self, ctx: FeedbackContext) -> bool:
        self._require(ctx, FeedbackStage.OUTCOME_FEEDBACK)
        self._emit(ANALYTICS_EVENTS.FEEDBACK_SKIPPED)
        return self._advance(ctx)

    def skip_all(self, ctx: FeedbackContext) -> bool:
        if ctx.completed:
            raise FeedbackStageError("Feedback already completed")
        if ctx.stage == FeedbackStage.PMF_SURVEY:
            self._emit(ANALYTICS_EVENTS.PMF_SURVEY_SKIPPED)
        skipped = [s.value for s in [ctx.stage] + ctx.pending_stages if s is not None]
        ctx.pending_stages.clear()
        logger.info(f"Feedback skipped: {skipped}")
        return self._advance(ctx)

    # --- Internals ---

    def _require(self, ctx: FeedbackContext, stage: FeedbackStage) -> None:
        if ctx.completed:
            raise FeedbackStageError("Feedback already completed")
        if ctx.stage != stage:
            current = ctx.stage.value if ctx.stage else "none"
            raise FeedbackStageError(f"Expected stage {stage.value}, current stage is {current}")

    def _advance(self, ctx: FeedbackContext) -> bool:
        if ctx.pending_stages:
            ctx.stage = ctx.pending_stages.pop(0)
            self._on_shown(ctx.stage)
            return False
        ctx.stage = None
        self._complete(ctx)
        return True

    def _on_shown(self, stage: FeedbackStage) -> None:
        c = self.counters
        if stage == FeedbackStage.ORIENTATION:
            with c.lock:
                c.orientation_show_count += 1
                show_count = c.orientation_show_count
            self._emit(ANALYTICS_EVENTS.ORIENTATION_PROMPT_SHOWN, {"show_count": show_count})
        elif stage == FeedbackStage.PMF_SURVEY:
            with c.lock:
                c.pmf_shown = True
                session = c.session_count
            self._emit(ANALYTICS_EVENTS.PMF_SURVEY_SHOWN, {"session": session})

    def _complete(self, ctx: FeedbackContext) -> None:
        if ctx.completed:
            return
        final = dataclasses.replace(
            ctx.summary,
            injection_site=ctx.injection_site,
            outcome=ctx.outcome,
            notes=ctx.outcome_notes,
        )
        ctx.summary = final
        ctx.log_outcome = best_effort("log_dose", self.persistence.log_dose, final, default=LogOutcome.FAILURE)
        ctx.completed = True

        if ctx.log_outcome == LogOutcome.FAILURE:
            self._emit(ANALYTICS_EVENTS.DOSE_LOG_FAILED)
        self._emit(ANALYTICS_EVENTS.DOSE_COMPLETED, {
            "log_outcome": ctx.log_outcome.value,
            "injection_site": ctx.injection_site,
            "outcome": ctx.outcome.value if ctx.outcome else None,
            "next_action": ctx.next_action.value,
        })
        logger.info(f"Feedback completed, dose log {ctx.log_outcome.value}")

    def _emit(self, name: str, params: Optional[Dict] = None) -> None:
        best_effort(f"analytics event {name}", self.analytics.log_event, name, params or {})
