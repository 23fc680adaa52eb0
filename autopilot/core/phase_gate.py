"""Phase gate for test results submitted to close a TDD phase.

The gate only decides. Applying the decision (recording the result,
counting attempts, moving phases) is left to the orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .workflow_types import SubtaskInfo, TDDPhase, TestResult


class GateDecision(Enum):
    """Outcome of checking a test result against a phase gate."""

    ACCEPT = "accept"  # Phase requirements met
    ALREADY_SATISFIED = "already_satisfied"  # RED with nothing failing
    REJECT = "reject"  # Malformed or wrong-phase result, no attempt used
    RETRY = "retry"  # GREEN still failing, attempts remain
    EXHAUSTED = "exhausted"  # GREEN still failing, no attempts remain


@dataclass
class GateOutcome:
    """Result of a gate check."""

    decision: GateDecision
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    attempts: Optional[int] = None
    """Attempt count after this check (GREEN only)"""

    @property
    def accepted(self) -> bool:
        return self.decision in (GateDecision.ACCEPT, GateDecision.ALREADY_SATISFIED)

    @property
    def reason(self) -> str:
        return "; ".join(self.errors) if self.errors else ""


def validate_counts(result: TestResult) -> List[str]:
    """Structural checks shared by every gate."""
    errors = []
    for name in ("total", "passed", "failed", "skipped"):
        if getattr(result, name) < 0:
            errors.append(f"{name} cannot be negative")
    if result.passed + result.failed + result.skipped > result.total:
        errors.append("passed + failed + skipped cannot exceed total")
    return errors


def check_red(result: TestResult) -> GateOutcome:
    """Check a result submitted to close the RED phase.

    A RED run must have at least one test. With failures it is accepted;
    with none the feature is treated as already implemented.
    """
    errors = validate_counts(result)
    if result.phase != TDDPhase.RED:
        errors.append(f"Expected RED test results, got {result.phase.value}")
    if errors:
        return GateOutcome(GateDecision.REJECT, errors=errors)

    if result.total == 0:
        return GateOutcome(
            GateDecision.REJECT,
            errors=["Cannot validate empty test suite"],
            suggestions=["Add at least one test to begin the TDD cycle"],
        )

    if result.failed == 0:
        return GateOutcome(
            GateDecision.ALREADY_SATISFIED,
            warnings=["No failing tests in RED phase; feature already implemented"],
        )

    return GateOutcome(GateDecision.ACCEPT)


def check_green(
    result: TestResult,
    subtask: SubtaskInfo,
    previous: Optional[TestResult] = None,
) -> GateOutcome:
    """Check a result submitted to close the GREEN phase.

    Args:
        result: Test result for the GREEN run
        subtask: Subtask being implemented (for attempt bookkeeping)
        previous: Last accepted result, used to flag shrinking test suites

    Returns:
        GateOutcome; RETRY and EXHAUSTED carry the incremented attempt count
    """
    errors = validate_counts(result)
    if result.phase != TDDPhase.GREEN:
        errors.append(f"Expected GREEN test results, got {result.phase.value}")
    if errors:
        return GateOutcome(GateDecision.REJECT, errors=errors)

    warnings = []
    if previous is not None and result.total < previous.total:
        warnings.append(
            f"Test count decreased from {previous.total} to {result.total}"
        )

    if result.failed > 0:
        attempts = subtask.attempts + 1
        decision = (
            GateDecision.EXHAUSTED
            if attempts >= subtask.max_attempts
            else GateDecision.RETRY
        )
        return GateOutcome(
            decision,
            errors=[
                f"GREEN phase must have zero failures ({result.failed} failing, "
                f"attempt {attempts}/{subtask.max_attempts})"
            ],
            warnings=warnings,
            suggestions=["Fix implementation to make all tests pass"],
            attempts=attempts,
        )

    if result.passed == 0:
        return GateOutcome(
            GateDecision.REJECT,
            errors=["GREEN phase must have at least one passing test"],
            warnings=warnings,
            suggestions=["Ensure tests exist and the implementation makes them pass"],
        )

    return GateOutcome(GateDecision.ACCEPT, warnings=warnings)


def get_gate_message(outcome: GateOutcome, phase: TDDPhase) -> str:
    """Get a human-readable message about a gate decision."""
    if outcome.decision == GateDecision.ACCEPT:
        return f"{phase.value} phase complete"
    if outcome.decision == GateDecision.ALREADY_SATISFIED:
        return f"{phase.value} phase satisfied without failing tests"
    if outcome.decision == GateDecision.EXHAUSTED:
        return f"{phase.value} phase failed after {outcome.attempts} attempts"
    return f"{phase.value} phase validation failed: {outcome.reason}"
