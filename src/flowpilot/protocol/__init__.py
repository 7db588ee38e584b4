from flowpilot.protocol.decoder import (
    decode_agents,
    decode_exec_failure,
    decode_map,
    decode_plan,
    decode_prompt,
    decode_spec,
    decode_task_list,
    decode_task_next,
    decode_verify,
    decode_workflow_guidance,
    decode_workflow_status,
)
from flowpilot.protocol.models import (
    WORKFLOW_PHASES,
    AgentInfo,
    AgentStatus,
    DecomposeResult,
    MapResult,
    PlanResult,
    SpecResult,
    TaskInfo,
    TaskResult,
    VerifyResult,
    WorkflowGuidance,
    WorkflowStatus,
)

__all__ = [
    "WORKFLOW_PHASES",
    "AgentInfo",
    "AgentStatus",
    "DecomposeResult",
    "MapResult",
    "PlanResult",
    "SpecResult",
    "TaskInfo",
    "TaskResult",
    "VerifyResult",
    "WorkflowGuidance",
    "WorkflowStatus",
    "decode_agents",
    "decode_exec_failure",
    "decode_map",
    "decode_plan",
    "decode_prompt",
    "decode_spec",
    "decode_task_list",
    "decode_task_next",
    "decode_verify",
    "decode_workflow_guidance",
    "decode_workflow_status",
]
