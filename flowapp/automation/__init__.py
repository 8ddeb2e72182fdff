from flowapp.automation.engine import FlowExecutionEngine, get_flow_engine, set_flow_engine
from flowapp.automation.models import AutomationFlow, AutomationFlowExecution
from flowapp.automation.registry import TriggerEvent, TriggerRegistry, trigger_registry
from flowapp.automation.scheduler import ResumeScheduler
from flowapp.automation.service import FlowService
from flowapp.automation.validation import validate_flow

__all__ = [
    "AutomationFlow",
    "AutomationFlowExecution",
    "FlowExecutionEngine",
    "FlowService",
    "ResumeScheduler",
    "TriggerEvent",
    "TriggerRegistry",
    "get_flow_engine",
    "set_flow_engine",
    "trigger_registry",
    "validate_flow",
]
