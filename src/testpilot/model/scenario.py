"""Scenario input models.

Scenarios are produced by an external loader and handed to the router
read-only, so every model here is frozen.
"""

from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict, Field


class TestInterface(enum.StrEnum):
    """Which kind of agent a scenario targets."""

    __test__ = False

    CLI = "CLI"
    TUI = "TUI"
    GUI = "GUI"
    MIXED = "MIXED"
    API = "API"


class Priority(enum.StrEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class TestStep(BaseModel):
    """One action inside a scenario.

    ``timeout`` is in seconds; ``None`` means the agent default.
    """

    __test__ = False
    model_config = ConfigDict(frozen=True)

    action: str
    target: str = ""
    value: str | None = None
    timeout: float | None = Field(default=None, gt=0)
    expected: str | None = None
    description: str = ""


class VerificationStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    target: str
    expected: str
    operator: str = "equals"
    description: str = ""


class OrchestratorScenario(BaseModel):
    """A complete, immutable test scenario."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    interface: TestInterface
    steps: tuple[TestStep, ...] = ()
    verifications: tuple[VerificationStep, ...] = ()
    tags: tuple[str, ...] = ()
    enabled: bool = True
    environment: dict[str, str] = Field(default_factory=dict)
