"""The control loop and its inputs.

- :mod:`~vigil.orchestrator.loop` -- the long-running iteration driver.
- :mod:`~vigil.orchestrator.directives` -- the human steering inbox.
- :mod:`~vigil.orchestrator.background` -- the bounded pool for
  fire-and-forget index writes.
- :mod:`~vigil.orchestrator.state` -- the agent state snapshot restored on
  restart.
"""

from vigil.orchestrator.background import BackgroundWriter
from vigil.orchestrator.directives import Directive, DirectiveKind, HumanDirectiveQueue
from vigil.orchestrator.loop import ControlLoop, LoopStatus
from vigil.orchestrator.state import AgentState, AgentStateStore, AgentStatus

__all__ = [
    "AgentState",
    "AgentStateStore",
    "AgentStatus",
    "BackgroundWriter",
    "ControlLoop",
    "Directive",
    "DirectiveKind",
    "HumanDirectiveQueue",
    "LoopStatus",
]
