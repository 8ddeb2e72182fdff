from __future__ import annotations

import uuid
from typing import Any


class FlowEngineError(Exception):
    """Base error for flow definition and execution lifecycle failures."""

    code = "flow_engine_error"
    status_code = 400

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class FlowValidationError(FlowEngineError):
    code = "flow_definition_invalid"
    status_code = 422

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Flow validation failed: {', '.join(errors)}", details=errors)
        self.errors = list(errors)


class FlowNotFoundError(FlowEngineError):
    code = "flow_not_found"
    status_code = 404

    def __init__(self, flow_id: uuid.UUID) -> None:
        super().__init__(f"Flow not found: {flow_id}")
        self.flow_id = flow_id


class FlowInactiveError(FlowEngineError):
    code = "flow_inactive"
    status_code = 409

    def __init__(self, flow_id: uuid.UUID) -> None:
        super().__init__(f"Flow is not active: {flow_id}")
        self.flow_id = flow_id


class FlowActiveDeleteError(FlowEngineError):
    code = "flow_active"
    status_code = 409

    def __init__(self, flow_id: uuid.UUID) -> None:
        super().__init__("Cannot delete an active flow; deactivate it first")
        self.flow_id = flow_id


class AlreadyRunningError(FlowEngineError):
    code = "flow_already_running"
    status_code = 409

    def __init__(self, flow_id: uuid.UUID, contact_id: str, execution_id: uuid.UUID | None = None) -> None:
        super().__init__(
            f"Flow {flow_id} already has an active execution for contact {contact_id}",
            details={"execution_id": str(execution_id) if execution_id else None},
        )
        self.flow_id = flow_id
        self.contact_id = contact_id
        self.execution_id = execution_id


class ExecutionNotFoundError(FlowEngineError):
    code = "flow_execution_not_found"
    status_code = 404

    def __init__(self, execution_id: uuid.UUID) -> None:
        super().__init__(f"Flow execution not found: {execution_id}")
        self.execution_id = execution_id


class StepError(Exception):
    """Raised inside a node handler; the step loop records it on the execution as Failed."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


HTTP_REQUEST_FAILED = "HttpRequestFailed"
AI_COMPLETION_FAILED = "AiCompletionFailed"
STEP_LIMIT_EXCEEDED = "StepLimitExceeded"
MALFORMED_NODE_CONFIG = "MalformedNodeConfig"
UNEXPECTED_STEP_ERROR = "UnexpectedStepError"
