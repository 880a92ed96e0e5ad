"""
TermHarness Hooks and Plugins

A registry of named hooks, before/after test and scenario handlers,
scenario extensions contributing step hooks and custom step/assertion
types, and plugins that bundle all of these behind a dependency check.

Handler failures are logged and recorded in the execution history but
never stop the remaining handlers.
"""

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from termharness.errors import HookError, PluginError
from termharness.logging import get_logger

if TYPE_CHECKING:
    from termharness.harness import TestHarness
    from termharness.scenario import Scenario, Step

logger = get_logger(__name__)


@dataclass
class HookContext:
    hook_name: str
    timestamp: float = field(default_factory=time.time)
    data: Any = None


@dataclass
class TestHookContext(HookContext):
    __test__ = False

    test_name: str = ""
    harness: Optional["TestHarness"] = None
    temp_data_path: Optional[str] = None


@dataclass
class ScenarioHookContext(HookContext):
    scenario: Optional["Scenario"] = None
    harness: Optional["TestHarness"] = None
    step_index: Optional[int] = None
    step: Optional["Step"] = None
    step_result: Any = None


HookHandler = Callable[[HookContext], Any]
TestHookHandler = Callable[[TestHookContext], Any]
ScenarioHookHandler = Callable[[ScenarioHookContext], Any]
CustomStepHandler = Callable[[str, ScenarioHookContext], Any]
CustomAssertionHandler = Callable[[str, str, Any, ScenarioHookContext], None]


@dataclass
class HookExecutionResult:
    hook_name: str
    execution_time: float
    handlers_executed: int
    errors: List[BaseException] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class ScenarioExtension:
    """
    Base class for scenario extensions. Override only what you need.

    custom_step_types / custom_assertion_types map a type name to its handler.
    """

    name: str = "extension"
    description: str = ""
    version: str = "1.0.0"

    def before_scenario(self, context: ScenarioHookContext) -> None:
        pass

    def after_scenario(self, context: ScenarioHookContext) -> None:
        pass

    def before_step(self, context: ScenarioHookContext) -> None:
        pass

    def after_step(self, context: ScenarioHookContext) -> None:
        pass

    def custom_step_types(self) -> Dict[str, CustomStepHandler]:
        return {}

    def custom_assertion_types(self) -> Dict[str, CustomAssertionHandler]:
        return {}


class Plugin:
    """Bundle of hooks and scenario extensions with declared dependencies."""

    name: str = "plugin"
    version: str = "1.0.0"
    description: str = ""
    dependencies: List[str] = []

    def hooks(self) -> Dict[str, HookHandler]:
        return {}

    def scenario_extensions(self) -> List[ScenarioExtension]:
        return []

    def initialize(self, manager: "HooksManager") -> None:
        pass

    def cleanup(self) -> None:
        pass


class HooksManager:
    def __init__(self) -> None:
        self._hooks: Dict[str, List[HookHandler]] = {}
        self._before_test: List[TestHookHandler] = []
        self._after_test: List[TestHookHandler] = []
        self._before_scenario: List[ScenarioHookHandler] = []
        self._after_scenario: List[ScenarioHookHandler] = []
        self._extensions: Dict[str, ScenarioExtension] = {}
        self._plugins: Dict[str, Plugin] = {}
        # hook handlers and extensions contributed by each plugin, for rollback
        self._plugin_contributions: Dict[str, Dict[str, Any]] = {}
        self._history: List[HookExecutionResult] = []

    # ------------------------------------------------------------------
    # Named hooks
    # ------------------------------------------------------------------

    def register_hook(self, hook_name: str, handler: HookHandler) -> None:
        handlers = self._hooks.setdefault(hook_name, [])
        if handler not in handlers:
            handlers.append(handler)

    def unregister_hook(self, hook_name: str, handler: HookHandler) -> None:
        handlers = self._hooks.get(hook_name)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._hooks[hook_name]

    def execute_hook(self, hook_name: str, context: Optional[HookContext] = None) -> Optional[HookExecutionResult]:
        handlers = list(self._hooks.get(hook_name, []))
        if not handlers:
            return None
        context = context or HookContext(hook_name=hook_name)
        started = time.time()
        result = HookExecutionResult(hook_name=hook_name, execution_time=0.0, handlers_executed=0)
        for handler in handlers:
            try:
                handler(context)
                result.handlers_executed += 1
            except Exception as exc:
                result.errors.append(exc)
                result.warnings.append(f"Hook handler failed for {hook_name}: {exc}")
        result.execution_time = time.time() - started
        self._history.append(result)
        if result.warnings:
            logger.warning("hook_handlers_failed", extra={"hook": hook_name, "warnings": result.warnings})
        return result

    # ------------------------------------------------------------------
    # Test and scenario handlers
    # ------------------------------------------------------------------

    def add_before_test(self, handler: TestHookHandler) -> None:
        self._before_test.append(handler)

    def add_after_test(self, handler: TestHookHandler) -> None:
        self._after_test.append(handler)

    def add_before_scenario(self, handler: ScenarioHookHandler) -> None:
        self._before_scenario.append(handler)

    def add_after_scenario(self, handler: ScenarioHookHandler) -> None:
        self._after_scenario.append(handler)

    def _run_all(self, label: str, calls: List[Callable[[], Any]]) -> HookExecutionResult:
        started = time.time()
        result = HookExecutionResult(hook_name=label, execution_time=0.0, handlers_executed=0)
        for call in calls:
            try:
                call()
                result.handlers_executed += 1
            except Exception as exc:
                result.errors.append(exc)
                result.warnings.append(f"{label} handler failed: {exc}")
                logger.warning("hook_handler_failed", extra={"hook": label, "error": str(exc)})
        result.execution_time = time.time() - started
        if calls:
            self._history.append(result)
        return result

    def execute_before_test(self, context: TestHookContext) -> HookExecutionResult:
        return self._run_all("before_test", [lambda h=h: h(context) for h in self._before_test])

    def execute_after_test(self, context: TestHookContext) -> HookExecutionResult:
        return self._run_all("after_test", [lambda h=h: h(context) for h in self._after_test])

    def execute_before_scenario(self, context: ScenarioHookContext) -> HookExecutionResult:
        calls = [lambda h=h: h(context) for h in self._before_scenario]
        calls += [lambda e=e: e.before_scenario(context) for e in self._extensions.values()]
        return self._run_all("before_scenario", calls)

    def execute_after_scenario(self, context: ScenarioHookContext) -> HookExecutionResult:
        # extensions unwind before the plain handlers
        calls = [lambda e=e: e.after_scenario(context) for e in self._extensions.values()]
        calls += [lambda h=h: h(context) for h in self._after_scenario]
        return self._run_all("after_scenario", calls)

    def execute_before_step(self, context: ScenarioHookContext) -> HookExecutionResult:
        return self._run_all("before_step", [lambda e=e: e.before_step(context) for e in self._extensions.values()])

    def execute_after_step(self, context: ScenarioHookContext) -> HookExecutionResult:
        return self._run_all("after_step", [lambda e=e: e.after_step(context) for e in self._extensions.values()])

    # ------------------------------------------------------------------
    # Scenario extensions
    # ------------------------------------------------------------------

    def register_scenario_extension(self, extension: ScenarioExtension) -> None:
        if extension.name in self._extensions:
            logger.warning("scenario_extension_overridden", extra={"extension": extension.name})
        self._extensions[extension.name] = extension

    def unregister_scenario_extension(self, name: str) -> None:
        self._extensions.pop(name, None)

    def get_scenario_extension(self, name: str) -> Optional[ScenarioExtension]:
        return self._extensions.get(name)

    def has_custom_step(self, step_type: str) -> bool:
        return any(step_type in e.custom_step_types() for e in self._extensions.values())

    def has_custom_assertion(self, assertion_type: str) -> bool:
        return any(assertion_type in e.custom_assertion_types() for e in self._extensions.values())

    def execute_custom_step(self, step_type: str, action: str, context: ScenarioHookContext) -> Any:
        for extension in self._extensions.values():
            handler = extension.custom_step_types().get(step_type)
            if handler is not None:
                try:
                    return handler(action, context)
                except Exception as exc:
                    raise HookError(
                        f"Custom step {step_type} failed in extension {extension.name}: {exc}",
                        retryable=True,
                    ) from exc
        raise HookError(f"No handler found for custom step type: {step_type}")

    def execute_custom_assertion(
        self,
        assertion_type: str,
        target: str,
        condition: str,
        expected: Any,
        context: ScenarioHookContext,
    ) -> None:
        for extension in self._extensions.values():
            handler = extension.custom_assertion_types().get(assertion_type)
            if handler is not None:
                try:
                    handler(target, condition, expected, context)
                except Exception as exc:
                    raise HookError(
                        f"Custom assertion {assertion_type} failed in extension {extension.name}: {exc}",
                        retryable=True,
                    ) from exc
                return
        raise HookError(f"No handler found for custom assertion type: {assertion_type}")

    # ------------------------------------------------------------------
    # Plugins
    # ------------------------------------------------------------------

    def register_plugin(self, plugin: Plugin) -> None:
        """Check dependencies, register contributions, then initialize. Rolls back on failure."""
        if plugin.name in self._plugins:
            logger.warning("plugin_overridden", extra={"plugin": plugin.name})
            self.unregister_plugin(plugin.name)

        for dependency in plugin.dependencies:
            if dependency not in self._plugins:
                raise PluginError(
                    f"Plugin {plugin.name} requires dependency {dependency} which is not registered",
                    metadata={"plugin": plugin.name, "dependency": dependency},
                )

        hooks = dict(plugin.hooks())
        extensions = list(plugin.scenario_extensions())
        self._plugins[plugin.name] = plugin
        self._plugin_contributions[plugin.name] = {"hooks": hooks, "extensions": extensions}
        for hook_name, handler in hooks.items():
            self.register_hook(hook_name, handler)
        for extension in extensions:
            self.register_scenario_extension(extension)

        try:
            plugin.initialize(self)
        except Exception as exc:
            self._remove_contributions(plugin.name)
            del self._plugins[plugin.name]
            raise PluginError(
                f"Plugin {plugin.name} initialization failed: {exc}",
                metadata={"plugin": plugin.name},
            ) from exc
        logger.info("plugin_registered", extra={"plugin": plugin.name, "version": plugin.version})

    def _remove_contributions(self, name: str) -> None:
        contributions = self._plugin_contributions.pop(name, {})
        for hook_name, handler in contributions.get("hooks", {}).items():
            self.unregister_hook(hook_name, handler)
        for extension in contributions.get("extensions", []):
            if self._extensions.get(extension.name) is extension:
                del self._extensions[extension.name]

    def unregister_plugin(self, name: str) -> None:
        plugin = self._plugins.get(name)
        if plugin is None:
            return
        self._remove_contributions(name)
        try:
            plugin.cleanup()
        except Exception as exc:
            logger.warning("plugin_cleanup_failed", extra={"plugin": name, "error": str(exc)})
        del self._plugins[name]

    def get_plugin(self, name: str) -> Optional[Plugin]:
        return self._plugins.get(name)

    def list_plugins(self) -> List[Plugin]:
        return list(self._plugins.values())

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_execution_history(self) -> List[HookExecutionResult]:
        return list(self._history)

    def clear_execution_history(self) -> None:
        self._history.clear()

    def get_statistics(self) -> Dict[str, int]:
        return {
            "total_hooks": len(self._hooks),
            "total_handlers": sum(len(h) for h in self._hooks.values()),
            "before_test_handlers": len(self._before_test),
            "after_test_handlers": len(self._after_test),
            "before_scenario_handlers": len(self._before_scenario),
            "after_scenario_handlers": len(self._after_scenario),
            "scenario_extensions": len(self._extensions),
            "plugins": len(self._plugins),
            "execution_history": len(self._history),
        }

    def cleanup(self) -> None:
        for name in list(self._plugins):
            self.unregister_plugin(name)
        self._hooks.clear()
        self._before_test.clear()
        self._after_test.clear()
        self._before_scenario.clear()
        self._after_scenario.clear()
        self._extensions.clear()
        self._history.clear()


class LoggingExtension(ScenarioExtension):
    """Logs scenario and step boundaries."""

    name = "logging"
    description = "Logs test execution details for debugging"

    def before_scenario(self, context: ScenarioHookContext) -> None:
        logger.info("scenario_started", extra={"scenario": context.scenario.name if context.scenario else "-"})

    def after_scenario(self, context: ScenarioHookContext) -> None:
        logger.info("scenario_finished", extra={"scenario": context.scenario.name if context.scenario else "-"})

    def before_step(self, context: ScenarioHookContext) -> None:
        step = context.step
        logger.info(
            "step_started",
            extra={
                "step_index": context.step_index,
                "step_type": step.type if step else None,
                "action": step.action if step else None,
            },
        )

    def after_step(self, context: ScenarioHookContext) -> None:
        success = getattr(context.step_result, "success", None)
        logger.info("step_finished", extra={"step_index": context.step_index, "success": success})


class TimingExtension(ScenarioExtension):
    """Measures scenario and step durations in seconds."""

    name = "timing"
    description = "Measures and reports execution times"

    def __init__(self) -> None:
        self._scenario_started: Optional[float] = None
        self._step_started: Dict[int, float] = {}
        self.scenario_durations: Dict[str, float] = {}
        self.step_durations: Dict[int, float] = {}

    def before_scenario(self, context: ScenarioHookContext) -> None:
        self._scenario_started = time.time()
        self.step_durations = {}

    def after_scenario(self, context: ScenarioHookContext) -> None:
        if self._scenario_started is None or context.scenario is None:
            return
        duration = time.time() - self._scenario_started
        self.scenario_durations[context.scenario.name] = duration
        logger.info("scenario_timing", extra={"scenario": context.scenario.name, "duration": round(duration, 3)})

    def before_step(self, context: ScenarioHookContext) -> None:
        if context.step_index is not None:
            self._step_started[context.step_index] = time.time()

    def after_step(self, context: ScenarioHookContext) -> None:
        started = self._step_started.pop(context.step_index, None) if context.step_index is not None else None
        if started is None:
            return
        duration = time.time() - started
        self.step_durations[context.step_index] = duration
        logger.debug("step_timing", extra={"step_index": context.step_index, "duration": round(duration, 3)})
