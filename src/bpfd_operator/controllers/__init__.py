"""Controllers: cluster operator, node agent, shared status protocol and runtime."""

from bpfd_operator.controllers.agent import RecordReconciler
from bpfd_operator.controllers.manager import build_agent, build_operator, run_agent, run_operator
from bpfd_operator.controllers.operator import IntentReconciler
from bpfd_operator.controllers.runtime import Controller, Result, Watcher, WorkQueue

__all__ = [
    "Controller",
    "IntentReconciler",
    "RecordReconciler",
    "Result",
    "Watcher",
    "WorkQueue",
    "build_agent",
    "build_operator",
    "run_agent",
    "run_operator",
]
