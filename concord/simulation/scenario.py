"""
Scenario replay for Concord

A scenario file (YAML or JSON) declares a policy book, the initial elements
and a list of steps. Each step is exactly one of:
- submit: A batch of edits that arrive together
- decide: A manual decision on the conflict holding a labelled edit
- approve: A consensus approval
- withdraw: An author withdrawing a labelled edit
- sweep: A timeout sweep, optionally after advancing the clock

Example:
    policies:
      default: {strategy: auto_merge, fallback_strategy: manual_merge}
    elements:
      - element_id: sheet-1
        content: {cells: {A1: 1, B1: 2}}
    steps:
      - submit:
          - {label: a, element_id: sheet-1, author_id: alice, base_version: 0,
             payload: {regions: {/cells/A1: 10}}}
          - {label: b, element_id: sheet-1, author_id: bob, base_version: 0,
             payload: {regions: {/cells/B1: 20}}}
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from concord.coordinator.events import EngineEvent
from concord.coordinator.session import EditHandle, ResolutionCoordinator, ResolutionOutcome
from concord.core.config import Settings
from concord.core.exceptions import ConcordError, InvalidPolicyError
from concord.core.policy import PolicyBook
from concord.core.state import EditPayload, ManualOutcome
from concord.persistence.journal import TransactionJournal

DEFAULT_START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class ElementSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    element_id: str
    content: Any = None
    document_id: str = "default"
    element_class: str | None = None


class SubmitSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    label: str | None = None
    element_id: str
    author_id: str
    base_version: int
    payload: EditPayload
    submitted_at: datetime | None = None


class DecideSpec(BaseModel):
    """Manual decision; ``conflict_of`` names an edit label inside the conflict."""

    model_config = ConfigDict(extra="forbid")

    conflict_of: str
    decided_by: str
    edit: str | None = None
    merged_payload: EditPayload | None = None


class ApproveSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    conflict_of: str
    approver: str
    edit: str | None = None
    merged_payload: EditPayload | None = None


class WithdrawSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    edit: str


class SweepSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    advance_seconds: float = Field(default=0.0, ge=0)


class Step(BaseModel):
    model_config = ConfigDict(extra="forbid")

    submit: list[SubmitSpec] | None = None
    decide: DecideSpec | None = None
    approve: ApproveSpec | None = None
    withdraw: WithdrawSpec | None = None
    sweep: SweepSpec | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "Step":
        given = [
            name
            for name in ("submit", "decide", "approve", "withdraw", "sweep")
            if getattr(self, name) is not None
        ]
        if len(given) != 1:
            raise ValueError(f"each step needs exactly one action, got {given or 'none'}")
        return self

    @property
    def action(self) -> str:
        for name in ("submit", "decide", "approve", "withdraw", "sweep"):
            if getattr(self, name) is not None:
                return name
        raise ValueError("empty step")


class Scenario(BaseModel):
    """A replayable sequence of editor activity."""

    model_config = ConfigDict(extra="forbid")

    name: str = "scenario"
    start_time: datetime = DEFAULT_START
    policies: PolicyBook = Field(default_factory=PolicyBook)
    elements: list[ElementSpec] = Field(default_factory=list)
    steps: list[Step] = Field(default_factory=list)

    @classmethod
    def from_file(cls, path: str | Path) -> "Scenario":
        """Load a scenario from ``.yaml``, ``.yml`` or ``.json``."""
        path = Path(path)
        text = path.read_text()
        try:
            if path.suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(text) or {}
            else:
                data = json.loads(text)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise InvalidPolicyError(f"Could not parse scenario {path}: {e}") from e

        try:
            scenario = cls.model_validate(data)
        except ValidationError as e:
            raise InvalidPolicyError(f"Invalid scenario {path}: {e}") from e

        if scenario.name == "scenario":
            scenario = scenario.model_copy(update={"name": path.stem})
        return scenario


class SimulationClock:
    """Deterministic clock; time moves only when a sweep advances it."""

    def __init__(self, start: datetime = DEFAULT_START) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)


@dataclass
class StepResult:
    index: int
    action: str
    detail: str
    error: str | None = None


@dataclass
class SimulationReport:
    """Everything a scenario run produced."""

    scenario: Scenario
    coordinator: ResolutionCoordinator
    events: list[EngineEvent] = field(default_factory=list)
    steps: list[StepResult] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def failed_steps(self) -> list[StepResult]:
        return [s for s in self.steps if s.error]


def _outcome(spec: DecideSpec | ApproveSpec, labels: dict[str, str]) -> ManualOutcome:
    if spec.edit is not None:
        return ManualOutcome(edit_id=labels[spec.edit])
    return ManualOutcome(merged_payload=spec.merged_payload)


def _describe(handles: list[EditHandle]) -> str:
    return ", ".join(f"{h.edit_id}={h.status.value}" for h in handles)


def _describe_outcome(outcome: ResolutionOutcome) -> str:
    text = f"{outcome.conflict_id} {outcome.status}"
    if outcome.committed_version is not None:
        text += f" at v{outcome.committed_version}"
    return text


async def run_scenario(
    scenario: Scenario,
    journal: TransactionJournal | None = None,
    settings: Settings | None = None,
) -> SimulationReport:
    """
    Replay a scenario against a fresh coordinator.

    Engine errors raised by a step are recorded on that step and the run
    continues with the next one.
    """
    clock = SimulationClock(scenario.start_time)
    coordinator = ResolutionCoordinator(
        policy_book=scenario.policies,
        journal=journal,
        settings=settings,
        clock=clock.now,
    )
    subscription = coordinator.bus.subscribe()
    report = SimulationReport(scenario=scenario, coordinator=coordinator)

    for element in scenario.elements:
        await coordinator.create_element(
            element.element_id,
            content=element.content,
            document_id=element.document_id,
            element_class=element.element_class,
        )

    logger.info(f"Running scenario {scenario.name}: {len(scenario.steps)} steps")

    for index, step in enumerate(scenario.steps, start=1):
        result = StepResult(index=index, action=step.action, detail="")
        try:
            result.detail = await _run_step(step, coordinator, clock, report.labels)
        except (ConcordError, KeyError) as e:
            result.error = f"{e.__class__.__name__}: {e}"
            logger.warning(f"Step {index} ({step.action}) failed: {result.error}")
        report.steps.append(result)

    report.events = subscription.drain()
    subscription.close()
    return report


async def _run_step(
    step: Step,
    coordinator: ResolutionCoordinator,
    clock: SimulationClock,
    labels: dict[str, str],
) -> str:
    if step.submit is not None:
        handles = await coordinator.submit_edits(
            [
                {
                    "element_id": s.element_id,
                    "author_id": s.author_id,
                    "base_version": s.base_version,
                    "payload": s.payload,
                    "submitted_at": s.submitted_at,
                }
                for s in step.submit
            ]
        )
        for spec, handle in zip(step.submit, handles):
            if spec.label:
                labels[spec.label] = handle.edit_id
        return _describe(handles)

    if step.decide is not None:
        conflict_id = coordinator.get_handle(labels[step.decide.conflict_of]).conflict_id
        outcome = await coordinator.apply_manual_decision(
            conflict_id, _outcome(step.decide, labels), step.decide.decided_by
        )
        return _describe_outcome(outcome)

    if step.approve is not None:
        conflict_id = coordinator.get_handle(labels[step.approve.conflict_of]).conflict_id
        outcome = await coordinator.record_approval(
            conflict_id, step.approve.approver, _outcome(step.approve, labels)
        )
        return _describe_outcome(outcome)

    if step.withdraw is not None:
        handle = await coordinator.withdraw_edit(labels[step.withdraw.edit])
        return _describe([handle])

    clock.advance(step.sweep.advance_seconds)
    outcomes = await coordinator.sweep_timeouts()
    return "; ".join(_describe_outcome(o) for o in outcomes) or "nothing timed out"
