"""perpdesk.pipeline

One run: snapshot -> decision -> candidates -> picker -> validation.

Stages are sequential. The state machine says where a run is; the orchestrator
says how it got there.
"""

from __future__ import annotations

from perpdesk.pipeline.orchestrator import PipelineOrchestrator, PipelineRun
from perpdesk.pipeline.state import PipelineEvent, PipelineState, transition

__all__ = [
    "PipelineOrchestrator",
    "PipelineRun",
    "PipelineEvent",
    "PipelineState",
    "transition",
]
