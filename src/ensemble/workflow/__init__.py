"""Workflow orchestration — descriptors, engine, records, loop controller."""

from ensemble.workflow.conditions import (
    contains_keyword,
    error_threshold_stop_condition,
    iteration_stop_condition,
    keyword_stop_condition,
    stability_stop_condition,
    success_stop_condition,
)
from ensemble.workflow.descriptor import (
    EvaluatorOptimizerWorkflow,
    ParallelWorkflow,
    RouteStrategy,
    RoutingWorkflow,
    SequentialWorkflow,
    WorkflowDescriptor,
    descriptor_from_dict,
)
from ensemble.workflow.engine import WorkflowEngine
from ensemble.workflow.evaluation import Evaluation, parse_evaluation
from ensemble.workflow.loop import (
    LoopConfig,
    LoopController,
    LoopRunState,
    agent_unit,
    agent_units,
    workflow_unit,
)
from ensemble.workflow.record import WorkflowExecutionRecord, WorkflowStatus
from ensemble.workflow.routing import keyword_classifier, select_route

__all__ = [
    "contains_keyword",
    "error_threshold_stop_condition",
    "iteration_stop_condition",
    "keyword_stop_condition",
    "stability_stop_condition",
    "success_stop_condition",
    "EvaluatorOptimizerWorkflow",
    "ParallelWorkflow",
    "RouteStrategy",
    "RoutingWorkflow",
    "SequentialWorkflow",
    "WorkflowDescriptor",
    "descriptor_from_dict",
    "WorkflowEngine",
    "Evaluation",
    "parse_evaluation",
    "LoopConfig",
    "LoopController",
    "LoopRunState",
    "agent_unit",
    "agent_units",
    "workflow_unit",
    "WorkflowExecutionRecord",
    "WorkflowStatus",
    "keyword_classifier",
    "select_route",
]
