from typing import Any, Dict, List

import pytest

from termharness.errors import HookError, PluginError
from termharness.hooks import (
    HookContext,
    HooksManager,
    LoggingExtension,
    Plugin,
    ScenarioExtension,
    ScenarioHookContext,
    TestHookContext,
    TimingExtension,
)


class EchoExtension(ScenarioExtension):
    name = "echo"

    def __init__(self) -> None:
        self.events: List[str] = []

    def before_scenario(self, context: ScenarioHookContext) -> None:
        self.events.append("before_scenario")

    def after_scenario(self, context: ScenarioHookContext) -> None:
        self.events.append("after_scenario")

    def custom_step_types(self):
        return {"echo": lambda action, context: action.upper()}

    def custom_assertion_types(self):
        return {"equals": self.equals}

    def equals(self, target: str, condition: str, expected: Any, context: ScenarioHookContext) -> None:
        if target != expected:
            raise AssertionError(f"{target!r} != {expected!r}")


class RecordingPlugin(Plugin):
    name = "recording"
    version = "2.0.0"

    def __init__(self) -> None:
        self.seen: List[str] = []
        self.extension = EchoExtension()
        self.initialized = False
        self.cleaned_up = False

    def hooks(self):
        return {"app_started": self.on_app_started}

    def on_app_started(self, context: HookContext) -> None:
        self.seen.append(context.hook_name)

    def scenario_extensions(self):
        return [self.extension]

    def initialize(self, manager: HooksManager) -> None:
        self.initialized = True

    def cleanup(self) -> None:
        self.cleaned_up = True


class DependentPlugin(Plugin):
    name = "dependent"
    dependencies = ["recording"]


class BrokenPlugin(Plugin):
    name = "broken"

    def hooks(self):
        return {"app_started": lambda context: None}

    def scenario_extensions(self):
        return [EchoExtension()]

    def initialize(self, manager: HooksManager) -> None:
        raise RuntimeError("no database")


@pytest.fixture
def hooks() -> HooksManager:
    return HooksManager()


def test_execute_hook_without_handlers_returns_none(hooks: HooksManager) -> None:
    assert hooks.execute_hook("nothing") is None
    assert hooks.get_execution_history() == []


def test_named_hook_runs_all_handlers_despite_failures(hooks: HooksManager) -> None:
    calls: List[str] = []

    def first(context: HookContext) -> None:
        calls.append(f"first:{context.hook_name}")

    def broken(context: HookContext) -> None:
        raise ValueError("bad handler")

    def last(context: HookContext) -> None:
        calls.append(f"last:{context.data}")

    hooks.register_hook("app_started", first)
    hooks.register_hook("app_started", first)
    hooks.register_hook("app_started", broken)
    hooks.register_hook("app_started", last)

    result = hooks.execute_hook("app_started", HookContext(hook_name="app_started", data=42))

    assert calls == ["first:app_started", "last:42"]
    assert result.handlers_executed == 2
    assert [str(e) for e in result.errors] == ["bad handler"]
    assert result.warnings == ["Hook handler failed for app_started: bad handler"]
    assert hooks.get_execution_history() == [result]

    hooks.unregister_hook("app_started", broken)
    hooks.unregister_hook("app_started", first)
    hooks.unregister_hook("app_started", last)
    assert hooks.execute_hook("app_started") is None
    assert hooks.get_statistics()["total_hooks"] == 0


def test_test_handlers(hooks: HooksManager) -> None:
    names: List[str] = []
    hooks.add_before_test(lambda ctx: names.append(f"before:{ctx.test_name}"))
    hooks.add_after_test(lambda ctx: names.append(f"after:{ctx.test_name}"))

    context = TestHookContext(hook_name="test", test_name="login")
    assert hooks.execute_before_test(context).handlers_executed == 1
    assert hooks.execute_after_test(context).handlers_executed == 1
    assert names == ["before:login", "after:login"]


def test_scenario_handler_order(hooks: HooksManager) -> None:
    order: List[str] = []
    extension = EchoExtension()
    extension.events = order
    hooks.register_scenario_extension(extension)
    hooks.add_before_scenario(lambda ctx: order.append("handler_before"))
    hooks.add_after_scenario(lambda ctx: order.append("handler_after"))

    context = ScenarioHookContext(hook_name="scenario")
    hooks.execute_before_scenario(context)
    hooks.execute_after_scenario(context)

    assert order == ["handler_before", "before_scenario", "after_scenario", "handler_after"]
    labels = [h.hook_name for h in hooks.get_execution_history()]
    assert labels == ["before_scenario", "after_scenario"]


def test_step_hooks_without_extensions_leave_no_history(hooks: HooksManager) -> None:
    result = hooks.execute_before_step(ScenarioHookContext(hook_name="step", step_index=0))
    assert result.handlers_executed == 0
    assert hooks.get_execution_history() == []


def test_custom_step_and_assertion_dispatch(hooks: HooksManager) -> None:
    hooks.register_scenario_extension(EchoExtension())
    context = ScenarioHookContext(hook_name="scenario")

    assert hooks.has_custom_step("echo")
    assert not hooks.has_custom_step("input")
    assert hooks.execute_custom_step("echo", "hello", context) == "HELLO"

    hooks.execute_custom_assertion("equals", "a", "eq", "a", context)
    with pytest.raises(HookError, match="Custom assertion equals failed in extension echo") as excinfo:
        hooks.execute_custom_assertion("equals", "a", "eq", "b", context)
    assert excinfo.value.retryable is True

    with pytest.raises(HookError, match="No handler found for custom step type: teleport") as excinfo:
        hooks.execute_custom_step("teleport", "now", context)
    assert excinfo.value.retryable is False
    with pytest.raises(HookError, match="No handler found for custom assertion type: vibes"):
        hooks.execute_custom_assertion("vibes", "x", "y", None, context)


def test_extension_registry(hooks: HooksManager) -> None:
    first, second = EchoExtension(), EchoExtension()
    hooks.register_scenario_extension(first)
    hooks.register_scenario_extension(second)
    assert hooks.get_scenario_extension("echo") is second
    hooks.unregister_scenario_extension("echo")
    assert hooks.get_scenario_extension("echo") is None
    assert not hooks.has_custom_step("echo")


def test_plugin_lifecycle(hooks: HooksManager) -> None:
    plugin = RecordingPlugin()
    hooks.register_plugin(plugin)

    assert plugin.initialized
    assert hooks.get_plugin("recording") is plugin
    assert hooks.get_scenario_extension("echo") is plugin.extension
    hooks.execute_hook("app_started")
    assert plugin.seen == ["app_started"]

    hooks.register_plugin(DependentPlugin())
    assert [p.name for p in hooks.list_plugins()] == ["recording", "dependent"]

    hooks.unregister_plugin("recording")
    assert plugin.cleaned_up
    assert hooks.get_plugin("recording") is None
    assert hooks.get_scenario_extension("echo") is None
    assert hooks.execute_hook("app_started") is None


def test_plugin_missing_dependency(hooks: HooksManager) -> None:
    with pytest.raises(PluginError, match="Plugin dependent requires dependency recording which is not registered"):
        hooks.register_plugin(DependentPlugin())
    assert hooks.list_plugins() == []


def test_plugin_initialization_failure_rolls_back(hooks: HooksManager) -> None:
    with pytest.raises(PluginError, match="Plugin broken initialization failed: no database"):
        hooks.register_plugin(BrokenPlugin())
    stats = hooks.get_statistics()
    assert stats["plugins"] == 0
    assert stats["scenario_extensions"] == 0
    assert stats["total_hooks"] == 0


def test_reregistering_plugin_replaces_previous(hooks: HooksManager) -> None:
    old, new = RecordingPlugin(), RecordingPlugin()
    hooks.register_plugin(old)
    hooks.register_plugin(new)
    assert old.cleaned_up
    assert hooks.get_plugin("recording") is new
    hooks.execute_hook("app_started")
    assert old.seen == []
    assert new.seen == ["app_started"]


def test_statistics_and_cleanup(hooks: HooksManager) -> None:
    plugin = RecordingPlugin()
    hooks.register_plugin(plugin)
    hooks.add_before_test(lambda ctx: None)
    hooks.add_after_scenario(lambda ctx: None)
    hooks.execute_hook("app_started")

    stats: Dict[str, int] = hooks.get_statistics()
    assert stats == {
        "total_hooks": 1,
        "total_handlers": 1,
        "before_test_handlers": 1,
        "after_test_handlers": 0,
        "before_scenario_handlers": 0,
        "after_scenario_handlers": 1,
        "scenario_extensions": 1,
        "plugins": 1,
        "execution_history": 1,
    }

    hooks.clear_execution_history()
    assert hooks.get_execution_history() == []

    hooks.cleanup()
    assert plugin.cleaned_up
    assert all(value == 0 for value in hooks.get_statistics().values())


def test_built_in_extensions() -> None:
    hooks = HooksManager()
    timing = TimingExtension()
    hooks.register_scenario_extension(LoggingExtension())
    hooks.register_scenario_extension(timing)

    context = ScenarioHookContext(hook_name="scenario", step_index=0)
    hooks.execute_before_step(context)
    hooks.execute_after_step(context)
    assert set(timing.step_durations) == {0}

    # after_scenario without a scenario is ignored
    hooks.execute_before_scenario(ScenarioHookContext(hook_name="scenario"))
    hooks.execute_after_scenario(ScenarioHookContext(hook_name="scenario"))
    assert timing.scenario_durations == {}
