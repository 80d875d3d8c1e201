from .dsl import job, sh, uses, on, wf, workflow
from .errors import ConfigurationError
from .loader import load_workflow, parse_yaml
from .matrix import expand
from .model import Event, EventKind, RunStatus, Status, WorkflowDefinition, WorkflowRun
from .report import report
from .scheduler import WorkflowScheduler, run_workflow
from .triggers import matches

__version__ = "0.1.0"

__all__ = [
    "job", "sh", "uses", "on", "wf", "workflow",
    "ConfigurationError", "load_workflow", "parse_yaml", "expand",
    "Event", "EventKind", "RunStatus", "Status", "WorkflowDefinition", "WorkflowRun",
    "report", "WorkflowScheduler", "run_workflow", "matches",
]
