from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from quantum_salvation.api.models import DecisionRecord, StoryState

DEFAULT_ENDING = "emergency_solution"

# A scalar threshold is a minimum; a (lo, hi) pair is an inclusive range.
Threshold = float | tuple[float, float]


@dataclass(frozen=True, slots=True)
class EndingRequirements:
    research_progress: Threshold | None = None
    quantum_stabilization: Threshold | None = None
    # Upper bound: the ending is only reachable once the clock is at or below it.
    time_remaining: float | None = None
    evidence: tuple[str, ...] = ()
    flags: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Ending:
    id: str
    title: str
    requirements: EndingRequirements


# Table order is the tie-break: the first satisfied entry wins.
ENDINGS: tuple[Ending, ...] = (
    Ending(
        id="true_cure",
        title="A Quantum Solution",
        requirements=EndingRequirements(
            research_progress=100,
            quantum_stabilization=80,
            evidence=("quantum_formula", "patient_zero_data", "stabilizer_compound"),
            flags={"saved_all_researchers": True, "maintained_quantum_integrity": True},
        ),
    ),
    Ending(
        id="partial_cure",
        title="Imperfect Solution",
        requirements=EndingRequirements(
            research_progress=80,
            quantum_stabilization=50,
            evidence=("quantum_formula", "stabilizer_compound"),
        ),
    ),
    Ending(
        id="emergency_solution",
        title="Against the Clock",
        requirements=EndingRequirements(research_progress=60, time_remaining=0),
    ),
    Ending(
        id="failure",
        title="Quantum Cascade",
        requirements=EndingRequirements(research_progress=(0, 50), time_remaining=0),
    ),
    Ending(
        id="quantum_collapse",
        title="Beyond the Veil",
        requirements=EndingRequirements(
            quantum_stabilization=(0, 30),
            flags={"caused_quantum_breach": True},
        ),
    ),
)


def _meets(value: float, threshold: Threshold) -> bool:
    if isinstance(threshold, tuple):
        lo, hi = threshold
        return lo <= value <= hi
    return value >= threshold


def requirements_met(state: StoryState, requirements: EndingRequirements) -> bool:
    world = state.world_state

    if requirements.research_progress is not None and not _meets(world.research_progress, requirements.research_progress):
        return False
    if requirements.quantum_stabilization is not None and not _meets(
        world.quantum_stabilization, requirements.quantum_stabilization
    ):
        return False
    if requirements.time_remaining is not None and world.time_remaining > requirements.time_remaining:
        return False
    if any(e not in state.collected_evidence for e in requirements.evidence):
        return False
    for flag, expected in requirements.flags.items():
        if state.flags.get(flag) != expected:
            return False
    return True


def determine_ending(state: StoryState, *, endings: Sequence[Ending] = ENDINGS) -> str:
    for ending in endings:
        if requirements_met(state, ending.requirements):
            return ending.id
    return DEFAULT_ENDING


def possible_endings(state: StoryState, *, endings: Sequence[Ending] = ENDINGS) -> dict[str, bool]:
    """Every ending id mapped to whether its requirements currently hold, in table order."""

    return {e.id: requirements_met(state, e.requirements) for e in endings}


def compute_ending_path(
    decisions: Sequence[DecisionRecord],
    *,
    flags: Mapping[str, Any],
    research_progress: float,
) -> str:
    """Best-effort narrative label derived from decision history.

    Applied in sequence: decision-type counts pick the two axes, then the
    `sacrificed_team` / `saved_everyone` flags override, then low research forces failure.
    """

    counts = {"altruistic": 0, "pragmatic": 0, "risky": 0, "careful": 0}
    for decision in decisions:
        kind = decision.context.get("type")
        if kind in counts:
            counts[kind] += 1

    primary = "humanitarian" if counts["altruistic"] > counts["pragmatic"] else "pragmatic"
    secondary = "bold" if counts["risky"] > counts["careful"] else "cautious"
    path = f"{primary}_{secondary}"

    if flags.get("sacrificed_team"):
        path = "ruthless"
    elif flags.get("saved_everyone"):
        path = "heroic"

    if research_progress < 30:
        path = "failure"

    return path
