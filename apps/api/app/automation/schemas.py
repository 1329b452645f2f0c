from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel


TriggerType = Literal["contact_created", "contact_updated", "deal_created", "deal_updated", "deal_stage_changed"]
EntityType = Literal["contact", "deal"]
StepType = Literal["action", "delay", "condition", "branch"]
DelayUnit = Literal["minutes", "hours", "days"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Condition(CamelModel):
    field: str = ""
    operator: str
    value: Any = None
    logic: Literal["AND", "OR"] = "AND"

    @field_validator("logic", mode="before")
    @classmethod
    def normalize_logic(cls, value: Any) -> Any:
        if value is None:
            return "AND"
        if isinstance(value, str):
            return value.strip().upper() or "AND"
        return value


_condition_list_adapter = TypeAdapter(list[Condition])


def parse_conditions(raw: Any) -> list[Condition]:
    if not raw:
        return []
    return _condition_list_adapter.validate_python(raw)


class TriggerConfig(CamelModel):
    from_stage_id: str | None = None
    to_stage_id: str | None = None


class Trigger(CamelModel):
    type: TriggerType
    config: TriggerConfig = Field(default_factory=TriggerConfig)


# Action configs. Each optional *_id falls back to the enrollment's entity.


class UpdateContactFieldConfig(CamelModel):
    field: str = Field(min_length=1)
    value: Any = None
    contact_id: str | None = None


class AddContactTagConfig(CamelModel):
    tag: str | None = None
    tags: list[str] | None = None
    contact_id: str | None = None

    @model_validator(mode="after")
    def require_tag(self) -> "AddContactTagConfig":
        if not self.requested_tags():
            raise ValueError("tag or tags is required")
        return self

    def requested_tags(self) -> list[str]:
        requested = [self.tag] if self.tag else []
        requested.extend(self.tags or [])
        return [tag.strip() for tag in requested if tag and tag.strip()]


class UpdateDealFieldConfig(CamelModel):
    field: str = Field(min_length=1)
    value: Any = None
    deal_id: str | None = None


class MoveDealToStageConfig(CamelModel):
    stage_id: str = Field(min_length=1)
    deal_id: str | None = None


class UpdateCustomFieldConfig(CamelModel):
    entity_type: EntityType
    field_name: str = Field(min_length=1)
    value: Any = None
    entity_id: str | None = None


class SendEmailConfig(CamelModel):
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)


class UpdateCandidateStatusConfig(CamelModel):
    status: Literal["active", "hired", "passed", "withdrawn"]
    pipeline_id: str | None = None


class MoveCandidateToStageConfig(CamelModel):
    stage_id: str = Field(min_length=1)
    pipeline_id: str | None = None


class UpdateCandidateRatingConfig(CamelModel):
    rating: int = Field(ge=1, le=5)
    pipeline_id: str | None = None


class AddCandidateNoteConfig(CamelModel):
    note: str = Field(min_length=1)
    pipeline_id: str | None = None


class ScheduleInterviewConfig(CamelModel):
    interview_date: datetime
    pipeline_id: str | None = None


class AssignToPositionConfig(CamelModel):
    position_id: str = Field(min_length=1)
    pipeline_id: str | None = None


class UpdateContactFieldAction(BaseModel):
    type: Literal["update_contact_field"]
    config: UpdateContactFieldConfig


class AddContactTagAction(BaseModel):
    type: Literal["add_contact_tag"]
    config: AddContactTagConfig


class UpdateDealFieldAction(BaseModel):
    type: Literal["update_deal_field"]
    config: UpdateDealFieldConfig


class MoveDealToStageAction(BaseModel):
    type: Literal["move_deal_to_stage"]
    config: MoveDealToStageConfig


class UpdateCustomFieldAction(BaseModel):
    type: Literal["update_custom_field"]
    config: UpdateCustomFieldConfig


class SendEmailAction(BaseModel):
    type: Literal["send_email"]
    config: SendEmailConfig


class UpdateCandidateStatusAction(BaseModel):
    type: Literal["update_candidate_status"]
    config: UpdateCandidateStatusConfig


class MoveCandidateToStageAction(BaseModel):
    type: Literal["move_candidate_to_stage"]
    config: MoveCandidateToStageConfig


class UpdateCandidateRatingAction(BaseModel):
    type: Literal["update_candidate_rating"]
    config: UpdateCandidateRatingConfig


class AddCandidateNoteAction(BaseModel):
    type: Literal["add_candidate_note"]
    config: AddCandidateNoteConfig


class ScheduleInterviewAction(BaseModel):
    type: Literal["schedule_interview"]
    config: ScheduleInterviewConfig


class AssignToPositionAction(BaseModel):
    type: Literal["assign_to_position"]
    config: AssignToPositionConfig


AutomationAction = Annotated[
    UpdateContactFieldAction
    | AddContactTagAction
    | UpdateDealFieldAction
    | MoveDealToStageAction
    | UpdateCustomFieldAction
    | SendEmailAction
    | UpdateCandidateStatusAction
    | MoveCandidateToStageAction
    | UpdateCandidateRatingAction
    | AddCandidateNoteAction
    | ScheduleInterviewAction
    | AssignToPositionAction,
    Field(discriminator="type"),
]

ACTION_TYPES = (
    "update_contact_field",
    "add_contact_tag",
    "update_deal_field",
    "move_deal_to_stage",
    "update_custom_field",
    "send_email",
    "update_candidate_status",
    "move_candidate_to_stage",
    "update_candidate_rating",
    "add_candidate_note",
    "schedule_interview",
    "assign_to_position",
)

action_adapter: TypeAdapter[AutomationAction] = TypeAdapter(AutomationAction)
_action_list_adapter = TypeAdapter(list[AutomationAction])


class DelayConfig(CamelModel):
    value: float = Field(gt=0)
    unit: DelayUnit = "days"


class Branch(CamelModel):
    name: str = Field(min_length=1)
    conditions: list[Condition] = Field(default_factory=list)


class BranchConfig(CamelModel):
    branches: list[Branch] = Field(min_length=1)
    default_branch: str | None = None


class StepDefinition(CamelModel):
    step_index: int = Field(ge=0)
    name: str | None = None
    type: StepType
    actions: list[dict[str, Any]] = Field(default_factory=list)
    delay_config: DelayConfig | None = None
    conditions: list[Condition] = Field(default_factory=list)
    branch_config: BranchConfig | None = None
    next_step_index: int | None = None
    branch_step_indices: dict[str, int] | None = None

    @model_validator(mode="after")
    def validate_step_shape(self) -> "StepDefinition":
        if self.type == "action":
            if not self.actions:
                raise ValueError("action step requires at least one action")
            self.actions = [action.model_dump(mode="json") for action in _action_list_adapter.validate_python(self.actions)]
        elif self.type == "delay" and self.delay_config is None:
            raise ValueError("delay step requires delayConfig")
        elif self.type == "condition" and not self.conditions:
            raise ValueError("condition step requires conditions")
        elif self.type == "branch" and self.branch_config is None:
            raise ValueError("branch step requires branchConfig")
        return self

    def config_payload(self) -> dict[str, Any]:
        if self.type == "action":
            return {"actions": self.actions}
        if self.type == "delay":
            return {"delayConfig": self.delay_config.model_dump(by_alias=True)}  # type: ignore[union-attr]
        if self.type == "condition":
            return {"conditions": [item.model_dump(by_alias=True) for item in self.conditions]}
        return {"branchConfig": self.branch_config.model_dump(by_alias=True)}  # type: ignore[union-attr]


class ExitGoal(CamelModel):
    type: Literal["field_value", "tag_applied", "deal_value", "custom_field"]
    field: str | None = None
    field_name: str | None = None
    operator: str = "equals"
    value: Any = None
    tags: list[str] = Field(default_factory=list)
    match: Literal["any", "all"] = "all"


class ExitCondition(CamelModel):
    type: Literal["activity_count", "time_in_automation", "negative_condition"]
    count: int | None = None
    days: int | None = None
    after_days: int | None = None
    conditions: list[Condition] = Field(default_factory=list)


class SafetyConfig(CamelModel):
    max_duration_days: int | None = None
    max_errors: int | None = None
    exit_on_unsubscribe: bool = False
    exit_on_bounce: bool = False


class ExitCriteria(CamelModel):
    goals: list[ExitGoal] = Field(default_factory=list)
    conditions: list[ExitCondition] = Field(default_factory=list)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)


class AutomationDefinition(CamelModel):
    name: str = Field(min_length=1)
    description: str | None = None
    trigger: Trigger
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[dict[str, Any]] = Field(default_factory=list)
    is_multi_step: bool = False
    steps: list[StepDefinition] = Field(default_factory=list)
    exit_criteria: ExitCriteria | None = None
    max_duration_days: int | None = Field(default=None, ge=1)
    safety_exit_enabled: bool = True
    is_active: bool = True

    @model_validator(mode="after")
    def validate_automation_structure(self) -> "AutomationDefinition":
        if self.is_multi_step:
            if not self.steps:
                raise ValueError("multi-step automation requires steps")
            indices = [step.step_index for step in self.steps]
            if len(indices) != len(set(indices)):
                raise ValueError("stepIndex must be unique within an automation")
        else:
            if not self.actions:
                raise ValueError("single-step automation requires actions")
            self.actions = [action.model_dump(mode="json") for action in _action_list_adapter.validate_python(self.actions)]
        return self


class AutomationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    name: str
    trigger_json: dict[str, Any]
    is_multi_step: bool
    is_active: bool
    enrolled_count: int
    active_enrollments: int
    completed_enrollments: int
    execution_count: int
    last_executed_at: datetime | None


class EnrollmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    automation_id: UUID
    entity_type: str
    entity_id: UUID
    status: str
    current_step_index: int
    next_step_at: datetime | None
    enrolled_at: datetime
    completed_at: datetime | None
    exited_at: datetime | None
    exit_reason: str | None
    error: str | None
    metadata_json: dict[str, Any]


class ExecutionLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    automation_id: UUID
    enrollment_id: UUID | None
    trigger_type: str
    trigger_data: dict[str, Any]
    step_index: int | None
    conditions_met: bool | None
    conditions_evaluated: list[dict[str, Any]]
    actions_executed: list[dict[str, Any]]
    status: str
    error: str | None
    session_id: str | None
    executed_at: datetime


class EnrollmentSummary(BaseModel):
    total: int
    by_status: dict[str, int]
    recent: list[EnrollmentRead]


class EnrollRequest(CamelModel):
    entity_type: EntityType
    entity_ids: list[UUID] = Field(min_length=1, max_length=500)


class EnrollResult(BaseModel):
    entity_id: str
    enrolled: bool
    reason: str | None = None
    enrollment_id: UUID | None = None


class PreviewEntry(BaseModel):
    entity_id: str
    would_enroll: bool
    reason: str | None = None


class DryRunRequest(CamelModel):
    sample_data: dict[str, Any] | None = None


class DebugLogEntry(BaseModel):
    id: int
    timestamp: datetime
    session_id: str
    level: str
    event: str
    data: dict[str, Any]


class DryRunResponse(BaseModel):
    session_id: str
    trigger_type: str
    sample_data: dict[str, Any]
    conditions_met: bool
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    logs: list[DebugLogEntry]


class ExecutionReport(BaseModel):
    enrollment: EnrollmentRead
    automation_name: str
    duration_seconds: float | None
    steps_executed: int
    actions_executed: int
    actions_failed: int
    conditions_evaluated: int
    logs: list[ExecutionLogRead]


class DebugSummary(BaseModel):
    automation_id: UUID
    total_executions: int
    successful: int
    failed: int
    skipped: int
    recent_errors: list[dict[str, Any]]
    recommendations: list[dict[str, str]]
