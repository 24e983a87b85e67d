"""
Stage catalog: the fixed, ordered stage lists for each workflow type.

Stages are string constants, not a Postgres ENUM.
Adding a new stage requires only a code change, not a migration.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import NotFound

# Workflow types
SALES_LEAD = "sales-lead"
SALES_DEAL = "sales-deal"
OFFBOARDING = "offboarding"

# Automation levels
FULLY_AUTOMATED = "fully-automated"
MANUAL_INTERVENTION = "manual-intervention"

# Trigger kinds
FILE_UPLOAD = "file-upload"
MANUAL_CONFIRM = "manual-confirm"
DECISION = "decision"
EXTERNAL_SYNC = "external-sync"
TIMED = "timed"

TRIGGER_KINDS: frozenset[str] = frozenset([FILE_UPLOAD, MANUAL_CONFIRM, DECISION, EXTERNAL_SYNC, TIMED])

# Decision targets that are not stage ids
NEXT = "@next"
REJECT = "@reject"
LOST = "@lost"

# Outcomes
OUTCOME_WON = "won"
OUTCOME_LOST = "lost"
OUTCOME_REJECTED = "rejected"
OUTCOME_COMPLETED = "completed"

# Timer actions
ENROLL = "enroll"
SEND = "send"


@dataclass(frozen=True)
class DecisionOption:
    key: str
    label: str
    target: str = NEXT


@dataclass(frozen=True)
class TimerSpec:
    kind: str
    business_days: int
    action: str = ENROLL
    template: str = ""
    recurring: bool = False
    max_fires: int = 1


@dataclass(frozen=True)
class StageDefinition:
    id: str
    order: int
    title: str
    automation_level: str = MANUAL_INTERVENTION
    trigger_kind: str = MANUAL_CONFIRM
    decision_options: tuple[DecisionOption, ...] = ()
    terminal: bool = False
    outcome: Optional[str] = None
    artifact_slot: Optional[str] = None
    checklist: tuple[str, ...] = ()
    required_checklist: tuple[str, ...] = ()
    timers: tuple[TimerSpec, ...] = ()
    external_names: tuple[str, ...] = ()
    owner: Optional[str] = None
    description: str = ""

    def option(self, key: str) -> DecisionOption:
        for opt in self.decision_options:
            if opt.key == key:
                return opt
        raise NotFound(f"Stage {self.id} has no decision option {key!r}")


class StageCatalog:
    """Read-only lookup over the per-workflow stage lists."""

    def __init__(self, workflows: dict[str, list[StageDefinition]]):
        self._stages: dict[str, tuple[StageDefinition, ...]] = {}
        self._by_id: dict[str, dict[str, StageDefinition]] = {}
        self._by_slot: dict[str, dict[str, StageDefinition]] = {}
        self._by_external: dict[str, dict[str, StageDefinition]] = {}

        for workflow_type, stages in workflows.items():
            ordered = tuple(sorted(stages, key=lambda s: s.order))
            orders = [s.order for s in ordered]
            if orders != list(range(len(ordered))):
                raise ValueError(f"{workflow_type}: stage orders must be unique and contiguous from 0, got {orders}")
            ids = [s.id for s in ordered]
            if len(set(ids)) != len(ids):
                raise ValueError(f"{workflow_type}: duplicate stage ids")
            for s in ordered:
                if s.trigger_kind not in TRIGGER_KINDS:
                    raise ValueError(f"{workflow_type}/{s.id}: unknown trigger kind {s.trigger_kind}")
                if s.trigger_kind == DECISION and not s.decision_options:
                    raise ValueError(f"{workflow_type}/{s.id}: decision stage without options")

            self._stages[workflow_type] = ordered
            self._by_id[workflow_type] = {s.id: s for s in ordered}
            self._by_slot[workflow_type] = {s.artifact_slot: s for s in ordered if s.artifact_slot}
            self._by_external[workflow_type] = {
                _normalize_external(name): s for s in ordered for name in s.external_names
            }

    @property
    def workflow_types(self) -> list[str]:
        return list(self._stages)

    def stages_for(self, workflow_type: str) -> tuple[StageDefinition, ...]:
        try:
            return self._stages[workflow_type]
        except KeyError:
            raise NotFound(f"Unknown workflow type: {workflow_type}") from None

    def get_stage(self, workflow_type: str, stage_id: str) -> StageDefinition:
        self.stages_for(workflow_type)
        stage = self._by_id[workflow_type].get(stage_id)
        if stage is None:
            raise NotFound(f"Unknown stage {stage_id!r} for workflow {workflow_type}")
        return stage

    def index_of(self, workflow_type: str, stage_id: str) -> int:
        return self.get_stage(workflow_type, stage_id).order

    def next_stage(self, workflow_type: str, stage_id: str) -> Optional[StageDefinition]:
        """Next linear stage, or None when stage_id is terminal."""
        stage = self.get_stage(workflow_type, stage_id)
        if stage.terminal:
            return None
        stages = self._stages[workflow_type]
        if stage.order + 1 >= len(stages):
            return None
        return stages[stage.order + 1]

    def first_stage(self, workflow_type: str) -> StageDefinition:
        return self.stages_for(workflow_type)[0]

    def final_stage(self, workflow_type: str) -> StageDefinition:
        return self.stages_for(workflow_type)[-1]

    def stages_between(self, workflow_type: str, start_order: int, end_order: int) -> tuple[StageDefinition, ...]:
        """Stages with start_order < order < end_order."""
        return tuple(s for s in self.stages_for(workflow_type) if start_order < s.order < end_order)

    def stage_for_slot(self, workflow_type: str, slot_id: str) -> StageDefinition:
        self.stages_for(workflow_type)
        stage = self._by_slot[workflow_type].get(slot_id)
        if stage is None:
            raise NotFound(f"No stage in {workflow_type} takes artifact slot {slot_id!r}")
        return stage

    def stage_for_external_name(self, workflow_type: str, external_name: str) -> Optional[StageDefinition]:
        self.stages_for(workflow_type)
        return self._by_external[workflow_type].get(_normalize_external(external_name))

    def terminal_stage_for_outcome(self, workflow_type: str, outcome: str) -> StageDefinition:
        for s in self.stages_for(workflow_type):
            if s.terminal and s.outcome == outcome:
                return s
        raise NotFound(f"Workflow {workflow_type} has no terminal stage for outcome {outcome!r}")

    def outcome_stages(self, workflow_type: str) -> tuple[StageDefinition, ...]:
        return tuple(s for s in self.stages_for(workflow_type) if s.terminal and s.outcome)


def _normalize_external(name: str) -> str:
    return " ".join(name.strip().lower().split())


# ---------------------------------------------------------------------------
# Sales lead onboarding
# ---------------------------------------------------------------------------

_PROPOSAL_FOLLOW_UP = TimerSpec(
    kind="proposal-follow-up",
    business_days=2,
    action=SEND,
    template="proposal-follow-up",
    recurring=True,
    max_fires=3,
)

SALES_LEAD_STAGES: list[StageDefinition] = [
    StageDefinition(
        "demo", 0, "Demo Call",
        automation_level=FULLY_AUTOMATED, trigger_kind=FILE_UPLOAD,
        artifact_slot="demo-call-transcript",
        description="Demo call transcript, normally uploaded by automation",
    ),
    StageDefinition(
        "readiness", 1, "Readiness Assessment",
        automation_level=FULLY_AUTOMATED, trigger_kind=FILE_UPLOAD,
        artifact_slot="readiness-pdf",
    ),
    StageDefinition(
        "decision", 2, "Scoping Decision Point",
        trigger_kind=DECISION,
        decision_options=(
            DecisionOption("proceed", "Schedule Scoping", NEXT),
            DecisionOption("reject", "Not a Fit", REJECT),
        ),
    ),
    StageDefinition(
        "scoping-prep", 3, "Scoping Prep Document",
        automation_level=FULLY_AUTOMATED, trigger_kind=FILE_UPLOAD,
        artifact_slot="scoping-prep-doc",
    ),
    StageDefinition(
        "scoping", 4, "Scoping Call",
        automation_level=FULLY_AUTOMATED, trigger_kind=FILE_UPLOAD,
        artifact_slot="scoping-call-transcript",
    ),
    StageDefinition(
        "dev-overview", 5, "Developer Overview",
        trigger_kind=FILE_UPLOAD, artifact_slot="developer-audio-overview",
    ),
    StageDefinition(
        "workflow-docs", 6, "N8N Workflow Description",
        automation_level=FULLY_AUTOMATED, trigger_kind=FILE_UPLOAD,
        artifact_slot="workflow-description",
    ),
    StageDefinition(
        "sprint-pricing", 7, "Review Sprint Length & Price Estimate",
        trigger_kind=FILE_UPLOAD, artifact_slot="sprint-pricing-estimate",
    ),
    StageDefinition(
        "proposal", 8, "Generate & Send Proposal Email",
        automation_level=FULLY_AUTOMATED, trigger_kind=MANUAL_CONFIRM,
    ),
    StageDefinition(
        "proposal-decision", 9, "Proposal Decision Point",
        trigger_kind=DECISION,
        decision_options=(
            DecisionOption("accept", "Accepted Proposal", NEXT),
            DecisionOption("decline", "Declined Proposal", REJECT),
            DecisionOption("adjust", "Adjusted & Accepted Proposal", NEXT),
        ),
        timers=(_PROPOSAL_FOLLOW_UP,),
    ),
    StageDefinition(
        "internal-client-docs", 10, "Internal & Client Scoping Document",
        automation_level=FULLY_AUTOMATED, trigger_kind=FILE_UPLOAD,
        artifact_slot="internal-client-documentation",
    ),
    StageDefinition(
        "ea", 11, "Engagement Agreement",
        automation_level=FULLY_AUTOMATED, trigger_kind=MANUAL_CONFIRM,
    ),
    StageDefinition(
        "setup", 12, "Project Setup",
        automation_level=FULLY_AUTOMATED, trigger_kind=MANUAL_CONFIRM,
    ),
    StageDefinition(
        "kickoff", 13, "Kickoff Brief",
        trigger_kind=FILE_UPLOAD, artifact_slot="kickoff-meeting-brief",
        terminal=True, outcome=OUTCOME_COMPLETED,
    ),
]

# ---------------------------------------------------------------------------
# Sales deal pipeline (HubSpot-mirrored)
# ---------------------------------------------------------------------------

_NEED_INFO_REMINDER = TimerSpec(kind="reminder-sequence", business_days=3, action=ENROLL, template="need-info")
_QUOTE_REMINDER = TimerSpec(kind="quote-reminder", business_days=3, action=ENROLL, template="quote-sent")

SALES_DEAL_STAGES: list[StageDefinition] = [
    StageDefinition(
        "demo-call", 0, "Demo Call",
        automation_level=FULLY_AUTOMATED, trigger_kind=FILE_UPLOAD,
        artifact_slot="demo-call-transcript",
        external_names=("MQO - Meeting Booked",),
    ),
    StageDefinition(
        "needs-info", 1, "Needs Info",
        trigger_kind=MANUAL_CONFIRM,
        timers=(_NEED_INFO_REMINDER,),
        external_names=("SQL - Need Info",),
        description="Follow-up sent; waiting on system access",
    ),
    StageDefinition(
        "gl-review", 2, "GL Review",
        trigger_kind=MANUAL_CONFIRM,
        checklist=("internal-assignment-sent", "team-review-submitted"),
        external_names=("MQO - Financial Review",),
    ),
    StageDefinition(
        "create-quote", 3, "Create Quote",
        trigger_kind=MANUAL_CONFIRM,
        external_names=("SQL - Create Quote",),
    ),
    StageDefinition(
        "quote-sent", 4, "Quote Sent",
        trigger_kind=DECISION,
        decision_options=(
            DecisionOption("approved", "Quote Approved", NEXT),
            DecisionOption("declined", "Quote Declined", LOST),
        ),
        timers=(_QUOTE_REMINDER,),
        external_names=("SQO - Quote Sent",),
    ),
    StageDefinition(
        "prepare-engagement", 5, "Prepare Engagement",
        trigger_kind=MANUAL_CONFIRM,
        external_names=("Prepare EA",),
    ),
    StageDefinition(
        "ea-ready-for-review", 6, "EA Ready for Review",
        automation_level=FULLY_AUTOMATED, trigger_kind=EXTERNAL_SYNC,
        external_names=("EA Ready for Review",),
    ),
    StageDefinition(
        "ea-sent", 7, "EA Sent",
        automation_level=FULLY_AUTOMATED, trigger_kind=EXTERNAL_SYNC,
        external_names=("EA Sent",),
    ),
    StageDefinition(
        "closed-won", 8, "Closed Won",
        trigger_kind=MANUAL_CONFIRM, terminal=True, outcome=OUTCOME_WON,
        external_names=("Closed won",),
    ),
    StageDefinition(
        "closed-lost", 9, "Closed Lost",
        trigger_kind=MANUAL_CONFIRM, terminal=True, outcome=OUTCOME_LOST,
        external_names=("Closed lost",),
    ),
]

# ---------------------------------------------------------------------------
# Customer offboarding
# ---------------------------------------------------------------------------

OFFBOARDING_STAGES: list[StageDefinition] = [
    StageDefinition(
        "terminate-automations", 0, "Terminate Active Automations",
        checklist=("zapier", "make", "prismatic", "n8n"),
        owner="Automation team",
    ),
    StageDefinition(
        "terminate-billing", 1, "Terminate Engagement Agreement & Billing",
        checklist=("engagement-ended", "billing-stopped", "refund-issued"),
        required_checklist=("billing-stopped",),
        owner="Tim/CXR",
    ),
    StageDefinition(
        "revoke-access", 2, "Revoke Application Access",
        owner="Automation team",
    ),
    StageDefinition(
        "update-inventory", 3, "Update Automation Inventory",
        owner="Automation team",
    ),
    StageDefinition(
        "send-email", 4, "Send Offboarding Email",
        owner="Tim/CXR",
    ),
    StageDefinition(
        "complete", 5, "Offboarding Complete",
        terminal=True, outcome=OUTCOME_COMPLETED,
    ),
]

LOST_REASONS: frozenset[str] = frozenset([
    "no_response",
    "declined",
    "competitor",
    "timing",
    "budget",
    "other",
])

CATALOG = StageCatalog({
    SALES_LEAD: SALES_LEAD_STAGES,
    SALES_DEAL: SALES_DEAL_STAGES,
    OFFBOARDING: OFFBOARDING_STAGES,
})
