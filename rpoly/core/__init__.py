"""
rPoly Core — persistence primitives shared by every workflow.
"""

from rpoly.core.workflow_state import WorkflowStateService

__all__ = ["WorkflowStateService"]
