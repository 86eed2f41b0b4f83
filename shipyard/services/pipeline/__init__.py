"""Stage graph, controller and run report."""

from shipyard.services.pipeline.controller import PipelineController, flow_for
from shipyard.services.pipeline.graph import Stage, StageGraph, StageOutcome, run_stages
from shipyard.services.pipeline.report import (
    PipelineReport,
    TargetReport,
    exit_code_for,
    render_report,
    report_to_json,
)

__all__ = [
    # controller
    "PipelineController",
    "flow_for",
    # graph
    "Stage",
    "StageGraph",
    "StageOutcome",
    "run_stages",
    # report
    "PipelineReport",
    "TargetReport",
    "exit_code_for",
    "render_report",
    "report_to_json",
]
