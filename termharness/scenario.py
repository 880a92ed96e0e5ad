"""
TermHarness Scenario Executor

Loads declarative JSON scenarios (setup, ordered steps, ordered assertions,
optional cleanup) and drives a TestHarness through them. Step failures are
offered to the RetryRecoveryEngine before the scenario is considered failed;
the outcome is always returned as a ScenarioResult, never raised.

Scenario document:

    {
      "name": "...", "description": "...",
      "setup": {"personas": [...], "mockResponses": [...], "initialData": {...}},
      "steps": [{"type": "input", "action": "hello\\n", "timeout": 5000, "optional": false}],
      "assertions": [{"type": "ui", "target": "output", "condition": "contains", "expected": "pong"}],
      "cleanup": {"removeFiles": [...], "killProcesses": true, "restoreEnvironment": true}
    }

Step timeouts are in milliseconds.
"""

import json
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from termharness.errors import (
    AssertionFailure,
    EmergencyCleanupError,
    HarnessError,
    RetryExhausted,
    ScenarioValidationError,
    StepFailure,
)
from termharness.harness import TestHarness
from termharness.hooks import HooksManager, ScenarioHookContext
from termharness.logging import get_logger, log_context
from termharness.mock_server import MockResponse
from termharness.models import AssertionResult, PhaseResult, ScenarioResult, StepResult
from termharness.recovery import (
    ErrorContext,
    RecoveryOptions,
    RecoveryState,
    Resource,
    ResourceType,
    RetryRecoveryEngine,
)

logger = get_logger(__name__)

STEP_TYPES = ("input", "command", "wait", "assert")
ASSERTION_TYPES = ("ui", "file", "state", "process")
DEFAULT_STEP_TIMEOUT_MS = 5000
DEFAULT_SETUP_ATTEMPTS = 2

@dataclass
class PersonaSeed:
    name: str
    system_prompt: Optional[str] = None
    initial_messages: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersonaSeed":
        return cls(
            name=data["name"],
            system_prompt=data.get("systemPrompt", data.get("system_prompt")),
            initial_messages=list(data.get("initialMessages", data.get("initial_messages")) or []),
        )


@dataclass
class MockResponseSeed:
    endpoint: str
    response: MockResponse


@dataclass
class InitialData:
    personas: List[PersonaSeed] = field(default_factory=list)
    concepts: Optional[Dict[str, Any]] = None
    history: Optional[Dict[str, List[Any]]] = None


@dataclass
class ScenarioSetup:
    personas: List[PersonaSeed] = field(default_factory=list)
    mock_responses: List[MockResponseSeed] = field(default_factory=list)
    initial_data: Optional[InitialData] = None


@dataclass
class Step:
    type: str
    action: str
    timeout: Optional[int] = None  # ms
    optional: bool = False
    expected_result: Any = None

    @property
    def timeout_seconds(self) -> float:
        return (self.timeout or DEFAULT_STEP_TIMEOUT_MS) / 1000.0


@dataclass
class Assertion:
    type: str
    target: str
    condition: str
    expected: Any = None


@dataclass
class ScenarioCleanup:
    remove_files: List[str] = field(default_factory=list)
    kill_processes: bool = False
    restore_environment: bool = False


@dataclass
class Scenario:
    name: str
    description: str
    setup: ScenarioSetup = field(default_factory=ScenarioSetup)
    steps: List[Step] = field(default_factory=list)
    assertions: List[Assertion] = field(default_factory=list)
    cleanup: Optional[ScenarioCleanup] = None


# ----------------------------------------------------------------------
# Validation and loading
# ----------------------------------------------------------------------


def validate_scenario(
    data: Any,
    custom_step_types: Iterable[str] = (),
    custom_assertion_types: Iterable[str] = (),
) -> None:
    """Fail fast with a ScenarioValidationError naming the first malformed element."""
    if not isinstance(data, dict):
        raise ScenarioValidationError("Scenario must be a JSON object")
    if not data.get("name") or not isinstance(data.get("name"), str):
        raise ScenarioValidationError("Scenario must have a valid name")
    if not data.get("description") or not isinstance(data.get("description"), str):
        raise ScenarioValidationError("Scenario must have a valid description")
    if not isinstance(data.get("setup"), dict):
        raise ScenarioValidationError("Scenario must have a valid setup configuration")
    if not isinstance(data.get("steps"), list):
        raise ScenarioValidationError("Scenario must have a valid steps array")
    if not isinstance(data.get("assertions"), list):
        raise ScenarioValidationError("Scenario must have a valid assertions array")
    if data.get("cleanup") is not None and not isinstance(data["cleanup"], dict):
        raise ScenarioValidationError("Scenario cleanup must be an object when present")

    step_types = list(STEP_TYPES) + [t for t in custom_step_types if t not in STEP_TYPES]
    for i, step in enumerate(data["steps"], start=1):
        if not isinstance(step, dict) or step.get("type") not in step_types:
            raise ScenarioValidationError(
                f"Step {i} must have a valid type ({', '.join(step_types)})",
                metadata={"index": i},
            )
        if not step.get("action") or not isinstance(step.get("action"), str):
            raise ScenarioValidationError(f"Step {i} must have a valid action", metadata={"index": i})
        timeout = step.get("timeout")
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
            raise ScenarioValidationError(f"Step {i} timeout must be a positive number", metadata={"index": i})

    assertion_types = list(ASSERTION_TYPES) + [t for t in custom_assertion_types if t not in ASSERTION_TYPES]
    for i, assertion in enumerate(data["assertions"], start=1):
        if not isinstance(assertion, dict) or assertion.get("type") not in assertion_types:
            raise ScenarioValidationError(
                f"Assertion {i} must have a valid type ({', '.join(assertion_types)})",
                metadata={"index": i},
            )
        if not assertion.get("target") or not isinstance(assertion.get("target"), str):
            raise ScenarioValidationError(f"Assertion {i} must have a valid target", metadata={"index": i})
        if not assertion.get("condition") or not isinstance(assertion.get("condition"), str):
            raise ScenarioValidationError(f"Assertion {i} must have a valid condition", metadata={"index": i})

    setup = data["setup"]
    for i, persona in enumerate(setup.get("personas") or [], start=1):
        if not isinstance(persona, dict) or not persona.get("name"):
            raise ScenarioValidationError(f"Setup persona {i} must have a valid name", metadata={"index": i})
    for i, mock in enumerate(setup.get("mockResponses") or [], start=1):
        if not isinstance(mock, dict) or not mock.get("endpoint") or not isinstance(mock.get("response"), dict):
            raise ScenarioValidationError(
                f"Setup mock response {i} must have an endpoint and a response",
                metadata={"index": i},
            )


def _build_setup(data: Dict[str, Any]) -> ScenarioSetup:
    mock_responses = []
    for i, mock in enumerate(data.get("mockResponses") or [], start=1):
        try:
            response = MockResponse.from_dict(mock["response"])
        except ValueError as exc:
            raise ScenarioValidationError(f"Setup mock response {i} is invalid: {exc}") from exc
        mock_responses.append(MockResponseSeed(endpoint=mock["endpoint"], response=response))

    initial_data = None
    raw_initial = data.get("initialData")
    if raw_initial:
        initial_data = InitialData(
            personas=[PersonaSeed.from_dict(p) for p in raw_initial.get("personas") or []],
            concepts=raw_initial.get("concepts"),
            history=raw_initial.get("history"),
        )

    return ScenarioSetup(
        personas=[PersonaSeed.from_dict(p) for p in data.get("personas") or []],
        mock_responses=mock_responses,
        initial_data=initial_data,
    )


def load_scenario_from_dict(data: Any, hooks: Optional[HooksManager] = None) -> Scenario:
    custom_steps: List[str] = []
    custom_assertions: List[str] = []
    if hooks is not None:
        custom_steps = [t for t in _step_types_of(data) if hooks.has_custom_step(t)]
        custom_assertions = [t for t in _assertion_types_of(data) if hooks.has_custom_assertion(t)]
    validate_scenario(data, custom_steps, custom_assertions)

    cleanup = None
    if data.get("cleanup") is not None:
        raw = data["cleanup"]
        cleanup = ScenarioCleanup(
            remove_files=list(raw.get("removeFiles") or []),
            kill_processes=bool(raw.get("killProcesses", False)),
            restore_environment=bool(raw.get("restoreEnvironment", False)),
        )

    return Scenario(
        name=data["name"],
        description=data["description"],
        setup=_build_setup(data["setup"]),
        steps=[
            Step(
                type=s["type"],
                action=s["action"],
                timeout=s.get("timeout"),
                optional=s.get("optional") is True,
                expected_result=s.get("expectedResult"),
            )
            for s in data["steps"]
        ],
        assertions=[
            Assertion(type=a["type"], target=a["target"], condition=a["condition"], expected=a.get("expected"))
            for a in data["assertions"]
        ],
        cleanup=cleanup,
    )


def load_scenario_from_file(path: str, hooks: Optional[HooksManager] = None) -> Scenario:
    file_path = Path(path).resolve()
    if not file_path.is_file():
        raise ScenarioValidationError(f"Scenario file not found: {file_path}")
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ScenarioValidationError(f"Failed to load scenario from {path}: {exc}") from exc
    return load_scenario_from_dict(data, hooks)


def _step_types_of(data: Any) -> List[str]:
    steps = data.get("steps") if isinstance(data, dict) else None
    if not isinstance(steps, list):
        return []
    return [s["type"] for s in steps if isinstance(s, dict) and isinstance(s.get("type"), str)]


def _assertion_types_of(data: Any) -> List[str]:
    assertions = data.get("assertions") if isinstance(data, dict) else None
    if not isinstance(assertions, list):
        return []
    return [a["type"] for a in assertions if isinstance(a, dict) and isinstance(a.get("type"), str)]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error_message(exc: BaseException) -> str:
    if isinstance(exc, RetryExhausted) and exc.original_error is not None:
        return str(exc.original_error)
    return str(exc)


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------


class ScenarioExecutor:
    """
    Runs scenarios against one TestHarness.

    The harness is set up on demand. When start_app is true and the harness
    has an application command, the application is started at the end of
    setup so it sees the seeded data.
    """

    def __init__(
        self,
        harness: TestHarness,
        engine: Optional[RetryRecoveryEngine] = None,
        hooks: Optional[HooksManager] = None,
        start_app: bool = True,
    ) -> None:
        self.harness = harness
        self.engine = engine or RetryRecoveryEngine()
        self.hooks = hooks or HooksManager()
        self.start_app = start_app
        self.execution_context: Dict[str, Any] = {}
        self._resources: List[Resource] = []

    def load_scenario_from_file(self, path: str) -> Scenario:
        return load_scenario_from_file(path, self.hooks)

    def load_scenario_from_dict(self, data: Dict[str, Any]) -> Scenario:
        return load_scenario_from_dict(data, self.hooks)

    def execute_scenario(self, scenario: Scenario, recovery_options: Optional[RecoveryOptions] = None) -> ScenarioResult:
        options = recovery_options or RecoveryOptions()
        result = ScenarioResult(scenario_name=scenario.name, success=False, start_time=time.time())
        self.execution_context.clear()
        self._resources = []
        cleanup_done = False
        phase = "setup"

        with log_context(scenario=scenario.name):
            logger.info("scenario_started", extra={"steps": len(scenario.steps), "assertions": len(scenario.assertions)})
            self.harness.metrics.start_test(scenario.name)
            self.hooks.execute_before_scenario(self._hook_context(scenario))
            try:
                self._register_harness_resource()
                self._run_setup_phase(scenario, options, result)
                self._register_directory_resource()

                phase = "execution"
                for index, step in enumerate(scenario.steps):
                    step_result = self._execute_step_with_recovery(scenario, step, index, options, result)
                    result.step_results.append(step_result)
                    if not step_result.success and not step.optional:
                        raise StepFailure(
                            f"Step {index + 1} ({step.type}) failed: {step_result.error}",
                            index=index + 1,
                            step_type=step.type,
                        )

                phase = "assertion"
                for index, assertion in enumerate(scenario.assertions):
                    assertion_result = self._execute_assertion(scenario, assertion, index)
                    result.assertion_results.append(assertion_result)
                    if not assertion_result.success:
                        raise AssertionFailure(
                            f"Assertion {index + 1} ({assertion.type}) failed: {assertion_result.error}",
                            index=index + 1,
                            assertion_type=assertion.type,
                        )

                self._record_mock_metrics()
                result.success = True
            except Exception as exc:
                self._record_mock_metrics()
                result.error = _error_message(exc)
                cleanup_done = self._handle_failure(exc, phase, options, result)
            finally:
                self.hooks.execute_after_scenario(self._hook_context(scenario, data=result))
                result.cleanup_result = self._run_cleanup_phase(scenario, options, skip_emergency=cleanup_done)
                result.end_time = time.time()
                self.harness.metrics.finish_test(result.success, result.error)
                logger.info(
                    "scenario_finished",
                    extra={
                        "success": result.success,
                        "duration": round(result.duration, 3),
                        "passed_steps": result.passed_steps,
                        "failed_steps": result.failed_steps,
                    },
                )

        return result

    # ------------------------------------------------------------------
    # Resources and failure handling
    # ------------------------------------------------------------------

    def _register_harness_resource(self) -> None:
        harness = self.harness

        def cleanup_harness() -> None:
            if harness.is_app_running():
                harness.stop_app()
            harness.cleanup()

        self._track(Resource(type=ResourceType.PROCESS, identifier="test_harness", cleanup=cleanup_harness))

    def _register_directory_resource(self) -> None:
        path = self.harness.temp_data_path
        if path is None:
            return
        # removal is owned by the harness sandbox; tracked for reporting
        self._track(Resource(type=ResourceType.DIRECTORY, identifier=path, cleanup=lambda: None))

    def _track(self, resource: Resource) -> None:
        self._resources.append(resource)
        self.engine.register_resource(resource)

    def _release_resources(self) -> None:
        for resource in self._resources:
            self.engine.unregister_resource(resource.identifier)

    def _handle_failure(
        self,
        exc: BaseException,
        phase: str,
        options: RecoveryOptions,
        result: ScenarioResult,
    ) -> bool:
        """Offer a scenario-level failure to the engine. Returns whether cleanup already ran."""
        context = ErrorContext(
            operation="scenario_execution",
            phase=phase,
            resources=list(self._resources),
            metadata={"scenario": result.scenario_name},
        )
        failure = self.engine.handle_test_failure(exc, context, options)
        result.error_report = failure.error_report
        result.recovery_attempted = result.recovery_attempted or failure.recovery_attempted
        result.recovery_state = failure.final_state
        if failure.recovery_successful and failure.final_state == RecoveryState.RECOVERED:
            result.recovery_successful = True
            result.success = True
            result.error = None
        if failure.cleanup_error is not None:
            logger.warning("scenario_recovery_cleanup_failed", extra={"error": str(failure.cleanup_error)})
        return failure.cleanup_performed

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _run_setup_phase(self, scenario: Scenario, options: RecoveryOptions, result: ScenarioResult) -> PhaseResult:
        phase = PhaseResult(phase="setup", success=False, start_time=time.time())
        result.setup_result = phase
        try:
            phase.details = self.engine.retry_with_backoff(
                lambda: self._execute_setup(scenario.setup),
                options.max_retries or DEFAULT_SETUP_ATTEMPTS,
                "setup_phase",
            )
            phase.success = True
            return phase
        except Exception as exc:
            phase.error = _error_message(exc)
            raise
        finally:
            phase.end_time = time.time()

    def _execute_setup(self, setup: ScenarioSetup) -> Dict[str, Any]:
        harness = self.harness
        if not harness.is_setup:
            harness.setup()
        details: Dict[str, Any] = {}

        if setup.initial_data is not None:
            self._seed_initial_data(setup.initial_data)
            details["initial_data_setup"] = True

        for seed in setup.mock_responses:
            harness.mock.set_response(seed.endpoint, seed.response)
        if setup.mock_responses:
            details["mock_responses_configured"] = len(setup.mock_responses)

        for persona in setup.personas:
            self._seed_persona(persona)
        if setup.personas:
            details["personas_setup"] = len(setup.personas)

        if self.start_app and harness.config.app_command and not harness.is_app_running():
            harness.start_app()
            details["app_started"] = True
        return details

    def _seed_initial_data(self, initial: InitialData) -> None:
        fs = self.harness.fs
        for persona in initial.personas:
            self._seed_persona(persona)
        if initial.concepts is not None:
            fs.write_text(self.harness.resolve_path("concepts.jsonc"), json.dumps(initial.concepts, indent=2))
        for persona_name, messages in (initial.history or {}).items():
            path = self.harness.resolve_path(os.path.join("personas", persona_name, "history.jsonc"))
            fs.write_text(path, json.dumps(messages, indent=2))

    def _seed_persona(self, persona: PersonaSeed) -> None:
        fs = self.harness.fs
        persona_dir = self.harness.resolve_path(os.path.join("personas", persona.name))
        fs.make_dir(persona_dir)
        system = {
            "name": persona.name,
            "systemPrompt": persona.system_prompt or f"You are {persona.name}, a helpful AI assistant.",
            "created": _now_iso(),
        }
        fs.write_text(os.path.join(persona_dir, "system.jsonc"), json.dumps(system, indent=2))
        if persona.initial_messages:
            history = [
                {
                    "id": f"initial_{i}",
                    "content": message,
                    "role": "user" if i % 2 == 0 else "assistant",
                    "timestamp": _now_iso(),
                }
                for i, message in enumerate(persona.initial_messages)
            ]
            fs.write_text(os.path.join(persona_dir, "history.jsonc"), json.dumps(history, indent=2))

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _hook_context(
        self,
        scenario: Scenario,
        step_index: Optional[int] = None,
        step: Optional[Step] = None,
        step_result: Any = None,
        data: Any = None,
    ) -> ScenarioHookContext:
        return ScenarioHookContext(
            hook_name="scenario",
            scenario=scenario,
            harness=self.harness,
            step_index=step_index,
            step=step,
            step_result=step_result,
            data=data if data is not None else self.execution_context,
        )

    def _execute_step_with_recovery(
        self,
        scenario: Scenario,
        step: Step,
        index: int,
        options: RecoveryOptions,
        result: ScenarioResult,
    ) -> StepResult:
        with log_context(step_index=index + 1):
            self.hooks.execute_before_step(self._hook_context(scenario, index, step))
            step_result = self._execute_step(scenario, step, index)

            if not step_result.success and not step.optional and options.attempt_recovery and options.retry_operation:
                context = ErrorContext(
                    operation=f"step_{index}_{step.type}",
                    phase="execution",
                    resources=list(self._resources),
                    retryable_operation=lambda: self._run_step_action(scenario, step, index),
                )
                step_options = RecoveryOptions(
                    attempt_recovery=True,
                    retry_operation=True,
                    max_retries=options.max_retries,
                    perform_cleanup=False,
                )
                failure = self.engine.handle_test_failure(
                    StepFailure(step_result.error or "step failed", index=index + 1, step_type=step.type),
                    context,
                    step_options,
                )
                result.recovery_attempted = True
                if failure.recovery_successful:
                    result.recovery_successful = True
                    step_result.success = True
                    step_result.error = None
                    step_result.output = "Recovered after failure"

            self.harness.metrics.record_step(
                f"step_{index + 1}_{step.type}",
                step.type,
                step_result.duration,
                step_result.success,
                step_result.error,
            )
            self.hooks.execute_after_step(self._hook_context(scenario, index, step, step_result))
            return step_result

    def _execute_step(self, scenario: Scenario, step: Step, index: int) -> StepResult:
        step_result = StepResult(
            step_index=index,
            step_type=step.type,
            action=step.action,
            success=False,
            start_time=time.time(),
            optional=step.optional,
        )
        try:
            output = self._run_step_action(scenario, step, index)
            step_result.output = output if output is None else str(output)
            if step.expected_result is not None:
                self.execution_context[f"step_{index}_result"] = step.expected_result
            step_result.success = True
        except Exception as exc:
            step_result.error = _error_message(exc)
            logger.warning(
                "step_failed",
                extra={"step_type": step.type, "action": step.action, "optional": step.optional, "error": step_result.error},
            )
        finally:
            step_result.end_time = time.time()
        return step_result

    def _run_step_action(self, scenario: Scenario, step: Step, index: int) -> Any:
        if step.type == "input":
            self.harness.send_input(step.action)
            return None
        if step.type == "command":
            self.harness.send_command(step.action)
            return None
        if step.type == "wait":
            return self._run_wait(step)
        if step.type == "assert":
            self._run_inline_assert(step.action)
            return None
        return self.hooks.execute_custom_step(step.type, step.action, self._hook_context(scenario, index, step))

    def _run_wait(self, step: Step) -> str:
        harness = self.harness
        timeout = step.timeout_seconds
        action = step.action
        if action.startswith("ui:"):
            return harness.wait_for_ui_text(action[len("ui:"):], timeout)
        if action.startswith("pattern:"):
            return harness.wait_for_ui_pattern(action[len("pattern:"):], timeout)
        if action.startswith("file:"):
            path = action[len("file:"):]
            harness.wait_for_file_change(path, timeout)
            return f"File changed: {path}"
        if action == "processing":
            harness.wait_for_processing_complete(timeout)
            return "Processing completed"
        if action == "idle":
            harness.wait_for_idle_state(timeout)
            return "Application reached idle state"
        if action == "llm_request":
            harness.wait_for_llm_request(timeout)
            return "LLM request received"
        raise HarnessError(f"Unknown wait action: {action}", retryable=False)

    def _run_inline_assert(self, action: str) -> None:
        harness = self.harness
        prefixed: Dict[str, Callable[[str], None]] = {
            "ui_contains:": harness.assert_ui_contains,
            "ui_not_contains:": harness.assert_ui_does_not_contain,
            "file_exists:": harness.assert_file_exists,
            "file_not_exists:": harness.assert_file_does_not_exist,
        }
        for prefix, check in prefixed.items():
            if action.startswith(prefix):
                check(action[len(prefix):])
                return
        if action == "process_running":
            harness.assert_process_state(True)
        elif action == "process_stopped":
            harness.assert_process_state(False)
        else:
            raise HarnessError(f"Unknown assert action: {action}", retryable=False)

    # ------------------------------------------------------------------
    # Assertions
    # ------------------------------------------------------------------

    def _execute_assertion(self, scenario: Scenario, assertion: Assertion, index: int) -> AssertionResult:
        assertion_result = AssertionResult(
            assertion_index=index,
            type=assertion.type,
            target=assertion.target,
            condition=assertion.condition,
            expected=assertion.expected,
            success=False,
            start_time=time.time(),
        )
        try:
            if assertion.type == "ui":
                assertion_result.actual = self._assert_ui(assertion)
            elif assertion.type == "file":
                assertion_result.actual = self._assert_file(assertion)
            elif assertion.type == "state":
                assertion_result.actual = self._assert_state(assertion)
            elif assertion.type == "process":
                assertion_result.actual = self._assert_process(assertion)
            else:
                self.hooks.execute_custom_assertion(
                    assertion.type,
                    assertion.target,
                    assertion.condition,
                    assertion.expected,
                    self._hook_context(scenario, data=self.execution_context),
                )
                assertion_result.actual = assertion.expected
            assertion_result.success = True
        except Exception as exc:
            assertion_result.error = str(exc)
            report = self.engine.create_error_report(
                exc,
                ErrorContext(operation=f"assertion_{index}_{assertion.type}", phase="assertion"),
            )
            logger.error(
                "assertion_failed",
                extra={
                    "assertion_index": index + 1,
                    "assertion_type": assertion.type,
                    "error": str(exc),
                    "suggestions": report.suggestions,
                },
            )
        finally:
            assertion_result.end_time = time.time()
        return assertion_result

    def _assert_ui(self, assertion: Assertion) -> str:
        output = self.harness.get_current_output()
        expected = str(assertion.expected)
        if assertion.condition == "contains":
            if expected not in output:
                raise AssertionFailure(f'UI does not contain expected text: "{expected}"')
        elif assertion.condition == "not_contains":
            if expected in output:
                raise AssertionFailure(f'UI contains unexpected text: "{expected}"')
        elif assertion.condition == "matches":
            if not re.search(expected, output):
                raise AssertionFailure(f"UI does not match expected pattern: {expected}")
        else:
            raise AssertionFailure(f"Unknown UI assertion condition: {assertion.condition}")
        return output

    def _assert_file(self, assertion: Assertion) -> Any:
        harness = self.harness
        if assertion.condition == "exists":
            harness.assert_file_exists(assertion.target)
            return True
        if assertion.condition == "not_exists":
            harness.assert_file_does_not_exist(assertion.target)
            return False
        if assertion.condition == "content_contains":
            harness.assert_file_content(assertion.target, str(assertion.expected))
            return assertion.expected
        if assertion.condition == "content_matches":
            harness.assert_file_content(assertion.target, re.compile(str(assertion.expected)))
            return assertion.expected
        raise AssertionFailure(f"Unknown file assertion condition: {assertion.condition}")

    def _assert_state(self, assertion: Assertion) -> Any:
        harness = self.harness
        if assertion.condition == "persona_exists":
            persona_dir = harness.resolve_path(os.path.join("personas", assertion.target))
            if not harness.fs.exists(persona_dir):
                raise AssertionFailure(f'Persona "{assertion.target}" does not exist')
            return True
        if assertion.condition == "persona_state":
            expected = assertion.expected if isinstance(assertion.expected, dict) else None
            harness.assert_persona_state(assertion.target, expected)
            return assertion.expected
        raise AssertionFailure(f"Unknown state assertion condition: {assertion.condition}")

    def _assert_process(self, assertion: Assertion) -> Any:
        harness = self.harness
        if assertion.condition == "running":
            harness.assert_process_state(bool(assertion.expected))
            return bool(assertion.expected)
        if assertion.condition == "exit_code":
            harness.assert_exit_code(assertion.expected)
            return assertion.expected
        if assertion.condition == "mock_requests":
            expected = assertion.expected
            if isinstance(expected, bool) or not isinstance(expected, int):
                raise AssertionFailure(f"mock_requests assertion needs an integer expected count, got {expected!r}")
            harness.assert_mock_request_count(expected)
            return expected
        raise AssertionFailure(f"Unknown process assertion condition: {assertion.condition}")

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _record_mock_metrics(self) -> None:
        history = self.harness.mock.get_request_history()
        self.harness.metrics.update_mock_server_metrics(
            request_count=self.harness.mock.total_requests,
            error_count=sum(1 for r in history if r.error),
            streaming_requests=sum(1 for r in history if r.streaming),
        )

    def _run_cleanup_phase(self, scenario: Scenario, options: RecoveryOptions, skip_emergency: bool) -> PhaseResult:
        phase = PhaseResult(phase="cleanup", success=False, start_time=time.time())
        try:
            if scenario.cleanup is not None:
                phase.details = self.engine.retry_with_backoff(
                    lambda: self._execute_declared_cleanup(scenario.cleanup),
                    options.max_retries or DEFAULT_SETUP_ATTEMPTS,
                    "cleanup_phase",
                )
                self._release_resources()
            elif not skip_emergency:
                self.engine.emergency_cleanup(self._resources)
                phase.details = {"emergency_cleanup": len(self._resources)}
            else:
                phase.details = {"cleanup_performed_by_recovery": True}
            phase.success = True
        except (EmergencyCleanupError, RetryExhausted) as exc:
            phase.error = str(exc)
            logger.warning("scenario_cleanup_failed", extra={"error": str(exc)})
        finally:
            phase.end_time = time.time()
        return phase

    def _execute_declared_cleanup(self, cleanup: ScenarioCleanup) -> Dict[str, Any]:
        harness = self.harness
        details: Dict[str, Any] = {}
        if cleanup.remove_files and harness.temp_data_path is not None:
            for path in cleanup.remove_files:
                absolute = harness.resolve_path(path)
                try:
                    if harness.fs.exists(absolute):
                        harness.fs.remove_tree(absolute)
                except OSError as exc:
                    logger.warning("cleanup_file_failed", extra={"path": absolute, "error": str(exc)})
            details["files_removed"] = len(cleanup.remove_files)
        if cleanup.kill_processes:
            harness.stop_app()
            details["processes_killed"] = True
        if cleanup.restore_environment:
            harness.sandbox.restore_environment()
            details["environment_restored"] = True
        return details
