"""Orchestrator.

Runs the turn state machine between the response generator and the
tool gateway, persisting every step.
"""

from orchestrator.llm import ResponseGenerator, ScriptedGenerator, create_response_generator
from orchestrator.loop import OrchestrationLoop

__all__ = [
    "OrchestrationLoop",
    "ResponseGenerator",
    "ScriptedGenerator",
    "create_response_generator",
]
