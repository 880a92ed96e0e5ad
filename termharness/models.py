"""Result models for scenario execution."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from termharness.recovery import ErrorReport, RecoveryState


@dataclass
class PhaseResult:
    """Outcome of the setup or cleanup phase."""
    phase: str
    success: bool
    start_time: float
    end_time: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def duration(self) -> float:
        return max(0.0, self.end_time - self.start_time)


@dataclass
class StepResult:
    step_index: int  # 0-based
    step_type: str
    action: str
    success: bool
    start_time: float
    end_time: float = 0.0
    output: Optional[str] = None
    error: Optional[str] = None
    optional: bool = False

    @property
    def duration(self) -> float:
        return max(0.0, self.end_time - self.start_time)


@dataclass
class AssertionResult:
    assertion_index: int  # 0-based
    type: str
    target: str
    condition: str
    expected: Any
    success: bool
    start_time: float
    end_time: float = 0.0
    actual: Any = None
    error: Optional[str] = None

    @property
    def duration(self) -> float:
        return max(0.0, self.end_time - self.start_time)


@dataclass
class ScenarioResult:
    """Structured outcome of one scenario. Callers decide pass/fail from `success`."""
    scenario_name: str
    success: bool
    start_time: float
    end_time: float = 0.0
    setup_result: Optional[PhaseResult] = None
    step_results: List[StepResult] = field(default_factory=list)
    assertion_results: List[AssertionResult] = field(default_factory=list)
    cleanup_result: Optional[PhaseResult] = None
    error: Optional[str] = None
    error_report: Optional[ErrorReport] = None
    recovery_attempted: bool = False
    recovery_successful: bool = False
    recovery_state: Optional[RecoveryState] = None

    @property
    def duration(self) -> float:
        return max(0.0, self.end_time - self.start_time)

    @property
    def passed_steps(self) -> int:
        return sum(1 for step in self.step_results if step.success)

    @property
    def failed_steps(self) -> int:
        return sum(1 for step in self.step_results if not step.success)

    @property
    def cleanup_completed(self) -> bool:
        return bool(self.cleanup_result and self.cleanup_result.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenario": self.scenario_name,
            "success": self.success,
            "duration": round(self.duration, 3),
            "setup": _phase_dict(self.setup_result),
            "steps": [
                {
                    "index": s.step_index + 1,
                    "type": s.step_type,
                    "action": s.action,
                    "success": s.success,
                    "optional": s.optional,
                    "duration": round(s.duration, 3),
                    "error": s.error,
                }
                for s in self.step_results
            ],
            "assertions": [
                {
                    "index": a.assertion_index + 1,
                    "type": a.type,
                    "target": a.target,
                    "condition": a.condition,
                    "success": a.success,
                    "error": a.error,
                }
                for a in self.assertion_results
            ],
            "cleanup": _phase_dict(self.cleanup_result),
            "error": self.error,
            "error_report": self.error_report.to_dict() if self.error_report else None,
            "recovery_attempted": self.recovery_attempted,
            "recovery_successful": self.recovery_successful,
            "recovery_state": self.recovery_state.value if self.recovery_state else None,
        }


def _phase_dict(phase: Optional[PhaseResult]) -> Optional[Dict[str, Any]]:
    if phase is None:
        return None
    return {
        "success": phase.success,
        "duration": round(phase.duration, 3),
        "details": phase.details,
        "error": phase.error,
    }
