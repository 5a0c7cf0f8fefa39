"""
Approval routing engine.

Pure decision logic for multi-step approval routes. Given the route attached
to a document's template, the document's current step and the decision
records of that step, ``decide`` computes what happens next. No I/O: the
lifecycle controller loads the inputs, calls the engine and persists the
returned outcome.

Outcomes
--------
``Rejected``
    Any rejected record in the step rejects the whole document, whatever the
    step's ``require_all`` policy says.
``StepPending``
    ``require_all`` step with approvals still outstanding.
``AdvanceToStep``
    Step satisfied and the route has a step numbered ``current + 1``.
``FullyApproved``
    Step satisfied and no next step exists, or the document runs in legacy
    single-step mode (no route, an empty route, or no current step).

Next-step lookup is by exact step number; gaps are never skipped. Routes are
checked for dense numbering with ``validate_steps`` when they are saved.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable, Optional, Sequence, Union

from docflow.enums import ApprovalStatus, DecisionAction


class InvalidRouteError(ValueError):
    """A route definition whose step numbering the engine cannot follow."""


@dataclass(frozen=True)
class StepSpec:
    """One stage of a route: who approves, and whether all of them must."""

    step_number: int
    name: str
    approver_ids: tuple[int, ...] = ()
    approver_role: Optional[str] = None
    require_all: bool = False


@dataclass(frozen=True)
class RouteSpec:
    name: str
    steps: tuple[StepSpec, ...] = ()

    def step(self, step_number: int) -> Optional[StepSpec]:
        for candidate in self.steps:
            if candidate.step_number == step_number:
                return candidate
        return None

    @property
    def is_empty(self) -> bool:
        return not self.steps


@dataclass(frozen=True)
class DecisionRecord:
    approver_id: int
    status: ApprovalStatus


@dataclass(frozen=True)
class Rejected:
    step_number: Optional[int]
    comment: Optional[str] = None


@dataclass(frozen=True)
class StepPending:
    step_number: int
    pending_approver_ids: tuple[int, ...] = ()
    comment: Optional[str] = None


@dataclass(frozen=True)
class AdvanceToStep:
    from_step_number: int
    next_step: StepSpec
    comment: Optional[str] = None


@dataclass(frozen=True)
class FullyApproved:
    step_number: Optional[int]
    legacy: bool = False
    comment: Optional[str] = None


RoutingOutcome = Union[Rejected, StepPending, AdvanceToStep, FullyApproved]


def is_legacy(route: Optional[RouteSpec], current_step_number: Optional[int]) -> bool:
    """No route, an empty route and a null step all mean single-step mode."""
    return route is None or route.is_empty or current_step_number is None


def initial_step(route: Optional[RouteSpec]) -> Optional[StepSpec]:
    """The step a submitted document enters, or None for single-step mode."""
    if route is None or route.is_empty:
        return None
    first = route.step(1)
    if first is None:
        raise InvalidRouteError(f"Route '{route.name}' has no step 1")
    return first


def is_step_satisfied(step: StepSpec, statuses: Sequence[ApprovalStatus]) -> bool:
    if step.require_all:
        return bool(statuses) and all(s == ApprovalStatus.APPROVED for s in statuses)
    return any(s == ApprovalStatus.APPROVED for s in statuses)


def _apply_decision(
    records: Iterable[DecisionRecord],
    deciding_approver_id: int,
    action: DecisionAction,
) -> list[DecisionRecord]:
    new_status = (
        ApprovalStatus.APPROVED
        if action == DecisionAction.APPROVE
        else ApprovalStatus.REJECTED
    )
    applied = []
    found = False
    for record in records:
        if not found and record.approver_id == deciding_approver_id:
            record = replace(record, status=new_status)
            found = True
        applied.append(record)
    if not found:
        applied.append(DecisionRecord(deciding_approver_id, new_status))
    return applied


def decide(
    route: Optional[RouteSpec],
    current_step_number: Optional[int],
    records: Iterable[DecisionRecord],
    deciding_approver_id: int,
    action: DecisionAction,
    comment: Optional[str] = None,
) -> RoutingOutcome:
    """Compute the routing outcome of one approver's decision.

    ``records`` holds every decision record of the current step as stored
    either side of this decision landing; the deciding approver's record is
    evaluated with ``action`` applied.

    Raises:
        InvalidRouteError: ``current_step_number`` is not a step of ``route``.
    """
    action = DecisionAction(action)
    applied = _apply_decision(records, deciding_approver_id, action)
    statuses = [record.status for record in applied]

    # A single rejection halts the route, require_all or not
    if ApprovalStatus.REJECTED in statuses:
        return Rejected(step_number=current_step_number, comment=comment)

    if is_legacy(route, current_step_number):
        return FullyApproved(step_number=current_step_number, legacy=True, comment=comment)

    step = route.step(current_step_number)
    if step is None:
        raise InvalidRouteError(
            f"Step {current_step_number} is not part of route '{route.name}'"
        )

    if not is_step_satisfied(step, statuses):
        return StepPending(
            step_number=step.step_number,
            pending_approver_ids=tuple(
                r.approver_id for r in applied if r.status == ApprovalStatus.PENDING
            ),
            comment=comment,
        )

    next_step = route.step(step.step_number + 1)
    if next_step is None:
        return FullyApproved(step_number=step.step_number, comment=comment)
    return AdvanceToStep(
        from_step_number=step.step_number, next_step=next_step, comment=comment
    )


def validate_steps(step_numbers: Iterable[int]) -> None:
    """Require step numbers 1..N, each exactly once.

    Raises:
        InvalidRouteError: numbering is empty, duplicated, or has gaps.
    """
    numbers = list(step_numbers)
    if not numbers:
        raise InvalidRouteError("A route needs at least one step")
    seen: set[int] = set()
    for number in numbers:
        if number in seen:
            raise InvalidRouteError(f"Step number {number} is used more than once")
        seen.add(number)
    expected = set(range(1, len(numbers) + 1))
    if seen != expected:
        missing = sorted(expected - seen)
        raise InvalidRouteError(
            f"Step numbers must run from 1 to {len(numbers)} without gaps"
            + (f" (missing {missing})" if missing else "")
        )
