from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


NodeType = Literal[
    "trigger",
    "wait",
    "send_message",
    "condition",
    "add_tag",
    "remove_tag",
    "update_field",
    "http_request",
    "ai_chatbot",
    "branch",
    "join",
    "end",
]
TriggerType = Literal[
    "message_received",
    "keyword",
    "tag_added",
    "tag_removed",
    "field_updated",
    "time_based",
    "webhook",
]
ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "greater_than",
    "less_than",
    "greater_than_or_equal",
    "less_than_or_equal",
    "is_empty",
    "is_not_empty",
]
BooleanOperator = Literal["AND", "OR"]
HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]
WaitUnit = Literal["seconds", "minutes", "hours", "days"]
MessageType = Literal["text", "image", "video", "audio", "document"]
KeywordMatchType = Literal["contains", "exact", "starts_with", "ends_with"]
ExecutionStatus = Literal["Running", "Waiting", "Completed", "Failed", "Cancelled"]

NODE_TYPES: tuple[str, ...] = get_args(NodeType)
TRIGGER_TYPES: tuple[str, ...] = get_args(TriggerType)
CONDITION_OPERATORS: tuple[str, ...] = get_args(ConditionOperator)
HTTP_METHODS: tuple[str, ...] = get_args(HttpMethod)
WAIT_UNITS: tuple[str, ...] = get_args(WaitUnit)
MESSAGE_TYPES: tuple[str, ...] = get_args(MessageType)
KEYWORD_MATCH_TYPES: tuple[str, ...] = get_args(KeywordMatchType)

TRUE_LABEL = "true"
FALSE_LABEL = "false"
ERROR_LABEL = "error"
DEFAULT_LABELS = ("default", "else")


class ConditionRule(BaseModel):
    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: Any = None


class WaitConfig(BaseModel):
    duration: float = Field(gt=0)
    unit: WaitUnit = "seconds"


class SendMessageConfig(BaseModel):
    message: str = Field(min_length=1)
    message_type: MessageType = "text"
    media_url: str | None = None


class ConditionConfig(BaseModel):
    conditions: list[ConditionRule]
    operator: BooleanOperator = "AND"


class TagConfig(BaseModel):
    tag_id: str = Field(min_length=1)


class UpdateFieldConfig(BaseModel):
    field: str = Field(min_length=1)
    value: Any


class HttpRequestConfig(BaseModel):
    url: str = Field(min_length=1)
    method: HttpMethod
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    max_attempts: int | None = Field(default=None, ge=1)
    backoff_seconds: float | None = Field(default=None, ge=0)
    response_variable: str = "http_response"


class AiChatbotConfig(BaseModel):
    chatbot_id: str = Field(min_length=1)
    prompt: str | None = None
    output_variable: str = "ai_reply"
    context_window: int | None = Field(default=None, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0)
    max_attempts: int | None = Field(default=None, ge=1)


class BranchRule(BaseModel):
    label: str = Field(min_length=1)
    conditions: list[ConditionRule]
    operator: BooleanOperator = "AND"


class BranchConfig(BaseModel):
    branches: list[BranchRule] = Field(min_length=1)
    default_label: str | None = None


class _NodeBase(BaseModel):
    id: str = Field(min_length=1)


class TriggerNode(_NodeBase):
    type: Literal["trigger"]
    config: dict[str, Any] = Field(default_factory=dict)


class WaitNode(_NodeBase):
    type: Literal["wait"]
    config: WaitConfig


class SendMessageNode(_NodeBase):
    type: Literal["send_message"]
    config: SendMessageConfig


class ConditionNode(_NodeBase):
    type: Literal["condition"]
    config: ConditionConfig


class AddTagNode(_NodeBase):
    type: Literal["add_tag"]
    config: TagConfig


class RemoveTagNode(_NodeBase):
    type: Literal["remove_tag"]
    config: TagConfig


class UpdateFieldNode(_NodeBase):
    type: Literal["update_field"]
    config: UpdateFieldConfig


class HttpRequestNode(_NodeBase):
    type: Literal["http_request"]
    config: HttpRequestConfig


class AiChatbotNode(_NodeBase):
    type: Literal["ai_chatbot"]
    config: AiChatbotConfig


class BranchNode(_NodeBase):
    type: Literal["branch"]
    config: BranchConfig


class JoinNode(_NodeBase):
    type: Literal["join"]
    config: dict[str, Any] = Field(default_factory=dict)


class EndNode(_NodeBase):
    type: Literal["end"]
    config: dict[str, Any] = Field(default_factory=dict)


FlowNode = Annotated[
    TriggerNode
    | WaitNode
    | SendMessageNode
    | ConditionNode
    | AddTagNode
    | RemoveTagNode
    | UpdateFieldNode
    | HttpRequestNode
    | AiChatbotNode
    | BranchNode
    | JoinNode
    | EndNode,
    Field(discriminator="type"),
]

flow_node_adapter: TypeAdapter[FlowNode] = TypeAdapter(FlowNode)


class FlowEdge(BaseModel):
    id: str = Field(min_length=1)
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    label: str | None = None


class FlowDefinitionCreate(BaseModel):
    name: str | None = None
    description: str | None = None
    trigger_type: str | None = None
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    nodes: list[dict[str, Any]] | None = None
    edges: list[dict[str, Any]] | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = False


class FlowDefinitionUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    trigger_type: str | None = None
    trigger_config: dict[str, Any] | None = None
    nodes: list[dict[str, Any]] | None = None
    edges: list[dict[str, Any]] | None = None
    variables: dict[str, Any] | None = None


class FlowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    team_id: str
    name: str
    description: str | None
    trigger_type: str
    trigger_config: dict[str, Any]
    nodes: list[dict[str, Any]]
    edges: list[dict[str, Any]]
    variables: dict[str, Any]
    is_active: bool
    version: int
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class FlowValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class FlowExecutionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    flow_id: uuid.UUID
    team_id: str
    contact_id: str
    status: ExecutionStatus
    current_node_id: str | None
    variables: dict[str, Any]
    history: list[dict[str, Any]]
    resume_at: datetime | None
    error_kind: str | None
    error_message: str | None
    step_count: int
    started_at: datetime
    completed_at: datetime | None
    last_activity_at: datetime


class FlowExecutionPage(BaseModel):
    items: list[FlowExecutionRead]
    page: int
    limit: int
    total: int
    total_pages: int


class FlowExecutionFilters(BaseModel):
    status: ExecutionStatus | None = None
    contact_id: str | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=200)


class FlowTriggerRequest(BaseModel):
    contact_id: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class FlowTestRequest(BaseModel):
    contact_id: str = Field(min_length=1)


class FireTriggerRequest(BaseModel):
    trigger_type: TriggerType
    contact_id: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class FireTriggerResult(BaseModel):
    outcome: Literal["started", "continued", "no_match", "rejected"]
    flow_id: uuid.UUID | None = None
    execution_id: uuid.UUID | None = None
    detail: str | None = None


class FlowStatsRead(BaseModel):
    flow_id: uuid.UUID
    total_executions: int
    status_breakdown: dict[str, int]
    completion_rate: float
    avg_completion_seconds: float
