"""Workflow definitions and gating conditions."""

from stagecore.workflow.conditions import (
    Condition,
    ConditionEvaluator,
    ConditionSyntaxError,
    LengthCondition,
    OutputCondition,
    StatusCondition,
    parse_condition,
)
from stagecore.workflow.loader import (
    KNOWN_AGENTS,
    ResourceAccess,
    StepDefinition,
    WorkflowConfig,
    WorkflowConfigError,
    WorkflowDefaults,
    WorkflowDefinition,
    WorkflowLoader,
    WorkflowOptions,
)

__all__ = [
    # Conditions
    "ConditionEvaluator",
    "ConditionSyntaxError",
    "Condition",
    "StatusCondition",
    "OutputCondition",
    "LengthCondition",
    "parse_condition",
    # Loader
    "WorkflowLoader",
    "WorkflowConfig",
    "WorkflowConfigError",
    "WorkflowDefinition",
    "WorkflowDefaults",
    "WorkflowOptions",
    "StepDefinition",
    "ResourceAccess",
    "KNOWN_AGENTS",
]
