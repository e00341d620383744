"""Simulation - replay scripted editor activity against the engine."""

from concord.simulation.scenario import (
    Scenario,
    SimulationClock,
    SimulationReport,
    StepResult,
    run_scenario,
)

__all__ = [
    "Scenario",
    "SimulationClock",
    "SimulationReport",
    "StepResult",
    "run_scenario",
]
