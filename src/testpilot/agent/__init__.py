"""Agents — execute scenarios against CLI and TUI programs."""

from testpilot.agent.base import Agent, AgentType, BaseAgent, normalize_action, output_matches
from testpilot.agent.cli import CLIAgent, CLISession, CommandResult
from testpilot.agent.tui import KEY_SEQUENCES, TUIAgent, TUISession

__all__ = [
    "KEY_SEQUENCES",
    "Agent",
    "AgentType",
    "BaseAgent",
    "CLIAgent",
    "CLISession",
    "CommandResult",
    "TUIAgent",
    "TUISession",
    "normalize_action",
    "output_matches",
]
