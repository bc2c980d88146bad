"""Closed phase and topic vocabularies for the intake dialog.

Every phase change goes through ``transition``; the table below is the whole
graph. A move that is not listed raises ``InvalidTransition``, which callers
never catch: reaching it means the orchestrator has a bug.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


class Phase(str, Enum):
    """Position of a session in the intake workflow."""
    INITIAL = "initial"
    IDENTIFICATION = "identification"
    COLLECTING_ID_NUMBER = "collecting-id-number"
    COLLECTING_NAME = "collecting-name"
    UNDERSTANDING_NEED = "understanding-need"
    COLLECTING_COUNTERPART_DATA = "collecting-counterpart-data"
    COLLECTING_POA_SPECIFIC_DATA = "collecting-poa-specific-data"
    CONFIRMING_DATA = "confirming-data"
    OFFERING_SOLUTION = "offering-solution"
    CLOSING = "closing"
    AWAITING_DOCUMENT_CONFIRMATION = "awaiting-document-confirmation"
    DOCUMENTS_RECEIVED = "documents-received"


class Topic(str, Enum):
    """Subject-matter category of the user's request."""
    GENERAL = "general"
    VEHICLE_TRANSFER = "vehicle-transfer"
    PROPERTY_TRANSFER = "property-transfer"
    PENSION_BENEFIT = "pension-benefit"


class InvalidTransition(AssertionError):
    """Raised when code attempts a phase move that the graph does not contain."""


IDENTITY_PHASES: FrozenSet[Phase] = frozenset(
    {Phase.INITIAL, Phase.IDENTIFICATION, Phase.COLLECTING_ID_NUMBER, Phase.COLLECTING_NAME}
)
COUNTERPART_PHASES: FrozenSet[Phase] = frozenset(
    {Phase.COLLECTING_COUNTERPART_DATA, Phase.COLLECTING_POA_SPECIFIC_DATA}
)
# Phases in which the four mandatory fields no longer reroute the dialog.
SETTLED_PHASES: FrozenSet[Phase] = frozenset(
    {
        Phase.CONFIRMING_DATA,
        Phase.OFFERING_SOLUTION,
        Phase.CLOSING,
        Phase.AWAITING_DOCUMENT_CONFIRMATION,
        Phase.DOCUMENTS_RECEIVED,
    }
)
# Phases in which the requested need is still open and topic detection runs.
TOPIC_OPEN_PHASES: FrozenSet[Phase] = IDENTITY_PHASES | {Phase.UNDERSTANDING_NEED}

_PRE_SOLUTION_TARGETS = frozenset(
    {
        Phase.COLLECTING_COUNTERPART_DATA,
        Phase.COLLECTING_POA_SPECIFIC_DATA,
        Phase.CONFIRMING_DATA,
        Phase.OFFERING_SOLUTION,
    }
)
# Side branches are entered by the document collaborators from any phase.
_SIDE_BRANCHES = frozenset({Phase.AWAITING_DOCUMENT_CONFIRMATION, Phase.DOCUMENTS_RECEIVED})

TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.INITIAL: frozenset(
        {Phase.IDENTIFICATION, Phase.COLLECTING_ID_NUMBER, Phase.COLLECTING_NAME, Phase.UNDERSTANDING_NEED}
    )
    | _PRE_SOLUTION_TARGETS,
    Phase.IDENTIFICATION: frozenset(
        {Phase.COLLECTING_ID_NUMBER, Phase.COLLECTING_NAME, Phase.UNDERSTANDING_NEED}
    )
    | _PRE_SOLUTION_TARGETS,
    Phase.COLLECTING_ID_NUMBER: frozenset({Phase.COLLECTING_NAME, Phase.UNDERSTANDING_NEED})
    | _PRE_SOLUTION_TARGETS,
    Phase.COLLECTING_NAME: frozenset({Phase.COLLECTING_ID_NUMBER, Phase.UNDERSTANDING_NEED})
    | _PRE_SOLUTION_TARGETS,
    Phase.UNDERSTANDING_NEED: _PRE_SOLUTION_TARGETS,
    Phase.COLLECTING_COUNTERPART_DATA: frozenset(
        {Phase.COLLECTING_POA_SPECIFIC_DATA, Phase.CONFIRMING_DATA, Phase.OFFERING_SOLUTION}
    ),
    Phase.COLLECTING_POA_SPECIFIC_DATA: frozenset(
        {Phase.COLLECTING_COUNTERPART_DATA, Phase.CONFIRMING_DATA, Phase.OFFERING_SOLUTION}
    ),
    Phase.CONFIRMING_DATA: frozenset({Phase.OFFERING_SOLUTION, Phase.COLLECTING_COUNTERPART_DATA}),
    Phase.OFFERING_SOLUTION: frozenset({Phase.CLOSING}),
    Phase.CLOSING: frozenset(),
    Phase.AWAITING_DOCUMENT_CONFIRMATION: frozenset({Phase.CLOSING, Phase.COLLECTING_COUNTERPART_DATA}),
    Phase.DOCUMENTS_RECEIVED: frozenset({Phase.CLOSING}),
}


def can_transition(current: Phase, target: Phase) -> bool:
    if target in _SIDE_BRANCHES:
        return True
    return target == current or target in TRANSITIONS[current]


def transition(current: Phase, target: Phase) -> Phase:
    """Purpose: Validate a phase move against the closed transition table.
    Inputs/Outputs: Inputs are the current and target Phase; returns the target.
    Side Effects / State: None; callers assign the returned phase to the session.
    Dependencies: TRANSITIONS and the side-branch set.
    Failure Modes: Raises InvalidTransition for moves outside the graph.
    If Removed: Phase bugs surface as silent wrong replies instead of failures.
    Testing Notes: closing -> initial must raise; initial -> identification must not.
    """
    # Staying put is always allowed; side branches accept entry from anywhere.
    if not can_transition(current, target):
        raise InvalidTransition(f"{current.value} -> {target.value}")
    return target
