"""Tests for the workflow execution engine."""

import asyncio

import pytest

from conftest import FakeBrowserContext, FakePage, RecordingCapture, ScriptedWorkflow, fail, flaky, succeed
from core.exceptions import AlreadyExecutedError, NotInitializedError
from workflow.engine import generate_workflow_id
from workflow.models import StepStatus, WorkflowOptions, WorkflowStatus


def three_steps(b_operation=None, c_operation=None):
    """A→appX, B→appY, C→appX."""
    return [
        {"name": "A", "application": "appX", "operation": succeed("a"), "store_as": "a"},
        {"name": "B", "application": "appY", "operation": b_operation or fail("B broke")},
        {"name": "C", "application": "appX", "operation": c_operation or succeed("c")},
    ]


@pytest.mark.unit
class TestWorkflowDeclaration:

    def test_workflow_id_format(self):
        wid = generate_workflow_id()
        prefix, timestamp, suffix = wid.split("_")
        assert prefix == "workflow"
        assert timestamp.isalnum()
        assert len(suffix) == 5

    def test_total_steps_fixed_at_construction(self, make_workflow):
        wf = make_workflow(three_steps())
        assert wf.get_state().total_steps == 3
        assert wf.get_state().current_step == 0
        assert wf.get_state().status == WorkflowStatus.NOT_STARTED

    def test_steps_sealed_after_construction(self, make_workflow):
        wf = make_workflow(three_steps())
        with pytest.raises(RuntimeError):
            wf.add_step("late", "appX", succeed())

    def test_required_applications_in_first_use_order(self, make_workflow):
        wf = make_workflow(three_steps())
        assert wf.required_applications() == ["appX", "appY"]

    def test_capture_must_be_callable(self, make_workflow):
        with pytest.raises(TypeError):
            make_workflow(three_steps(), capture="screenshots/")

    def test_step_requires_application(self, make_workflow):
        with pytest.raises(ValueError):
            make_workflow([{"name": "A", "application": "", "operation": succeed()}])


@pytest.mark.unit
class TestValidate:

    async def test_valid_workflow(self, make_workflow):
        result = await make_workflow(three_steps()).validate()
        assert result.valid is True
        assert result.errors == []

    async def test_empty_workflow_is_invalid(self, make_workflow):
        result = await make_workflow([]).validate()
        assert result.valid is False
        assert "No steps defined in workflow" in result.errors

    async def test_unknown_application_reported(self, make_workflow):
        wf = make_workflow([{"name": "A", "application": "billing", "operation": succeed()}])
        result = await wf.validate()
        assert result.valid is False
        assert result.errors[0].startswith("billing configuration invalid")

    async def test_invalid_configuration_reported(self, make_workflow, config):
        config.get_config("appY").base_url = "not a url"
        result = await make_workflow(three_steps()).validate()
        assert result.valid is False
        assert any(e.startswith("appY configuration invalid") for e in result.errors)

    async def test_step_validators_run(self, make_workflow):
        async def needs_token(context):
            return {"valid": False, "errors": ["token missing"]}

        def raises(context):
            raise KeyError("nope")

        wf = make_workflow([
            {"name": "A", "application": "appX", "operation": succeed(), "validator": needs_token},
            {"name": "B", "application": "appX", "operation": succeed(), "validator": raises},
        ])
        result = await wf.validate()
        assert result.valid is False
        assert "token missing" in result.errors
        assert any("Step 'B' validator raised" in e for e in result.errors)

    async def test_validate_is_read_only_and_idempotent(self, make_workflow, browser_context):
        wf = make_workflow(three_steps())
        before = wf.get_state().to_dict()
        first = await wf.validate()
        second = await wf.validate()
        assert first == second
        assert wf.get_state().to_dict() == before
        assert browser_context.pages == []


@pytest.mark.unit
class TestExecute:

    async def test_all_steps_succeed(self, make_workflow):
        steps = [
            {"name": f"S{i}", "application": "appX", "operation": succeed(i), "store_as": f"s{i}"}
            for i in range(1, 5)
        ]
        state = await make_workflow(steps).execute()

        assert state.status == WorkflowStatus.COMPLETED
        assert len(state.step_results) == 4
        assert all(r.status == StepStatus.COMPLETED for r in state.step_results)
        assert [r.step_number for r in state.step_results] == [1, 2, 3, 4]
        assert state.data == {"s1": 1, "s2": 2, "s3": 3, "s4": 4}
        assert state.current_step == 4
        assert state.errors == []

    async def test_abort_on_failure(self, make_workflow, browser_context):
        wf = make_workflow(three_steps(), retry_failed_steps=1)
        state = await wf.execute()

        assert state.status == WorkflowStatus.FAILED
        assert [(r.name, r.status) for r in state.step_results] == [
            ("A", StepStatus.COMPLETED),
            ("B", StepStatus.FAILED),
        ]
        assert len(state.errors) == 1
        assert state.errors[0].step == 2
        assert state.errors[0].application == "appY"
        assert state.current_step == 2
        assert state.step_results[1].attempts == 2
        assert len(browser_context.pages) == 2
        assert all(page.is_closed() for page in browser_context.pages)

    async def test_continue_on_error(self, make_workflow, browser_context):
        wf = make_workflow(three_steps(), retry_failed_steps=1, continue_on_error=True)
        state = await wf.execute()

        assert [(r.name, r.status) for r in state.step_results] == [
            ("A", StepStatus.COMPLETED),
            ("B", StepStatus.FAILED),
            ("C", StepStatus.COMPLETED),
        ]
        assert [e.step for e in state.errors] == [2]
        # Any recorded error makes the run FAILED
        assert state.status == WorkflowStatus.FAILED
        assert state.current_step == 3
        assert all(page.is_closed() for page in browser_context.pages)

    async def test_retry_then_success_seals_one_result(self, make_workflow):
        operation = flaky(failures=2, value="third time lucky")
        wf = make_workflow(
            [{"name": "Flaky", "application": "appX", "operation": operation, "store_as": "flaky"}],
            retry_failed_steps=2,
        )
        state = await wf.execute()

        assert state.status == WorkflowStatus.COMPLETED
        assert len(state.step_results) == 1
        result = state.step_results[0]
        assert result.status == StepStatus.COMPLETED
        assert result.attempts == 3
        assert result.data == "third time lucky"
        assert operation.calls["count"] == 3
        assert state.data["flaky"] == "third time lucky"

    async def test_default_is_single_attempt(self, make_workflow):
        operation = flaky(failures=1)
        state = await make_workflow([{"name": "Once", "application": "appX", "operation": operation}]).execute()

        assert state.status == WorkflowStatus.FAILED
        assert operation.calls["count"] == 1
        assert state.step_results[0].attempts == 1

    async def test_retry_waits_backoff(self, make_workflow, monkeypatch):
        delays = []
        real_sleep = asyncio.sleep

        async def fake_sleep(delay):
            delays.append(delay)
            await real_sleep(0)

        monkeypatch.setattr("workflow.engine.asyncio.sleep", fake_sleep)
        wf = make_workflow(
            [{"name": "Flaky", "application": "appX", "operation": flaky(failures=2)}],
            retry_failed_steps=2,
            retry_delay=2.0,
        )
        await wf.execute()
        assert delays == [2.0, 2.0]

    async def test_retry_jitter_varies_backoff(self, make_workflow, monkeypatch):
        delays = []
        real_sleep = asyncio.sleep

        async def fake_sleep(delay):
            delays.append(delay)
            await real_sleep(0)

        monkeypatch.setattr("workflow.engine.asyncio.sleep", fake_sleep)
        wf = make_workflow(
            [{"name": "Flaky", "application": "appX", "operation": flaky(failures=3)}],
            retry_failed_steps=3,
            retry_delay=2.0,
            retry_jitter=True,
        )
        state = await wf.execute()

        assert state.step_results[0].attempts == 4
        assert len(delays) == 3
        assert all(1.0 <= d <= 3.0 for d in delays)

    async def test_retryable_errors_narrow_retries(self, make_workflow):
        connection_drop = flaky(failures=1, value="reconnected")

        async def bad_selector(context):
            bad_selector.calls += 1
            raise ValueError("no element matches #submit")
        bad_selector.calls = 0

        wf = make_workflow(
            [
                {"name": "Reconnect", "application": "appX", "operation": connection_drop, "store_as": "net"},
                {"name": "Click", "application": "appX", "operation": bad_selector},
            ],
            retry_failed_steps=2,
            retryable_errors=["ConnectionError"],
        )
        state = await wf.execute()

        reconnect, click = state.step_results
        assert reconnect.status == StepStatus.COMPLETED
        assert reconnect.attempts == 2
        assert click.status == StepStatus.FAILED
        assert click.attempts == 1
        assert bad_selector.calls == 1

    async def test_step_timeout_counts_as_failed_attempt(self, make_workflow):
        async def slow(context):
            await asyncio.sleep(5)

        wf = make_workflow([{"name": "Slow", "application": "appX", "operation": slow, "timeout": 0.01}])
        state = await wf.execute()

        assert state.status == WorkflowStatus.FAILED
        assert "timed out" in state.errors[0].message
        assert state.step_results[0].status == StepStatus.FAILED

    async def test_workflow_timeout(self, make_workflow, browser_context):
        async def slow(context):
            await asyncio.sleep(5)

        wf = make_workflow(
            [
                {"name": "Fast", "application": "appX", "operation": succeed()},
                {"name": "Slow", "application": "appX", "operation": slow},
            ],
            timeout=0.05,
        )
        state = await wf.execute()

        assert state.status == WorkflowStatus.FAILED
        assert len(state.step_results) == 1
        assert state.errors[0].step == 2
        assert "exceeded timeout" in state.errors[0].message
        assert all(page.is_closed() for page in browser_context.pages)

    async def test_sync_operations_supported(self, make_workflow):
        wf = make_workflow([{"name": "Sync", "application": "appX", "operation": lambda ctx: 42, "store_as": "n"}])
        state = await wf.execute()
        assert state.data["n"] == 42

    async def test_step_body_sees_live_context(self, make_workflow, browser_context):
        seen = {}

        async def first(context):
            context.set_data("token", "abc")
            return "x"

        async def second(context):
            seen["token"] = context.get_data("token")
            seen["current_app"] = context.current_app
            seen["page"] = context.page()
            seen["url"] = context.base_url()

        wf = make_workflow([
            {"name": "First", "application": "appX", "operation": first},
            {"name": "Second", "application": "appY", "operation": second},
        ])
        await wf.execute()

        assert seen["token"] == "abc"
        assert seen["current_app"] == "appY"
        assert seen["page"] is browser_context.pages[1]
        assert seen["url"] == "http://appy.test"

    async def test_switches_only_when_application_changes(self, make_workflow, browser_context):
        wf = make_workflow([
            {"name": "A", "application": "appX", "operation": succeed()},
            {"name": "B", "application": "appX", "operation": succeed()},
            {"name": "C", "application": "appY", "operation": succeed()},
            {"name": "D", "application": "appX", "operation": succeed()},
        ])
        await wf.execute()
        page_x, page_y = browser_context.pages
        assert page_x.fronted == 2
        assert page_y.fronted == 1

    async def test_undeclared_application_lookup_fails_step(self, make_workflow):
        async def peek(context):
            return context.page("appY")

        wf = make_workflow([{"name": "Peek", "application": "appX", "operation": peek}])
        state = await wf.execute()
        assert state.status == WorkflowStatus.FAILED
        assert state.errors[0].message == str(NotInitializedError("appY"))

    async def test_initialization_failure_fails_before_any_step(self, config, capture):
        class BrokenContext(FakeBrowserContext):
            async def new_page(self):
                page = await super().new_page()
                page.fail_goto = len(self.pages) == 2
                return page

        browser_context = BrokenContext()

        calls = []

        async def record(context):
            calls.append(context.current_app)

        wf = ScriptedWorkflow(
            [
                {"name": "A", "application": "appX", "operation": record},
                {"name": "B", "application": "appY", "operation": record},
            ],
            browser_context=browser_context,
            name="broken",
            options=WorkflowOptions(),
            config=config,
            capture=capture,
        )
        state = await wf.execute()

        assert calls == []
        assert state.status == WorkflowStatus.FAILED
        assert state.step_results == []
        assert len(state.errors) == 1
        assert "ERR_CONNECTION_REFUSED" in state.errors[0].message
        assert all(page.is_closed() for page in browser_context.pages)

    async def test_execute_twice_raises(self, make_workflow):
        wf = make_workflow(three_steps(b_operation=succeed()))
        await wf.execute()
        with pytest.raises(AlreadyExecutedError):
            await wf.execute()

    async def test_cancellation_marks_cancelled_and_releases(self, make_workflow, browser_context):
        started = asyncio.Event()

        async def hang(context):
            started.set()
            await asyncio.sleep(10)

        wf = make_workflow([{"name": "Hang", "application": "appX", "operation": hang}])
        task = asyncio.create_task(wf.execute())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert wf.get_state().status == WorkflowStatus.CANCELLED
        assert all(page.is_closed() for page in browser_context.pages)

    async def test_get_state_is_a_copy(self, make_workflow):
        wf = make_workflow(three_steps(b_operation=succeed()))
        await wf.execute()
        copy = wf.get_state()
        copy.step_results.clear()
        copy.data["extra"] = True
        assert len(wf.get_state().step_results) == 3
        assert "extra" not in wf.get_data()

    async def test_get_and_set_data(self, make_workflow):
        wf = make_workflow(three_steps(b_operation=succeed()))
        wf.set_data("seed", 7)
        await wf.execute()
        assert wf.get_data("seed") == 7
        assert wf.get_data("a") == "a"
        assert wf.get_data() == {"seed": 7, "a": "a"}


@pytest.mark.unit
class TestPrimarySurface:

    async def test_primary_page_reused_and_left_open(self, make_workflow, browser_context):
        primary = FakePage("primary")
        wf = make_workflow(
            three_steps(b_operation=succeed()),
            primary_page=primary,
            primary_application="appX",
        )
        state = await wf.execute()

        assert state.status == WorkflowStatus.COMPLETED
        assert primary.visited == ["http://appx.test"]
        assert not primary.is_closed()
        assert len(browser_context.pages) == 1
        assert browser_context.pages[0].is_closed()


@pytest.mark.unit
class TestDiagnostics:

    async def test_screenshots_on_success_and_failure(self, make_workflow, capture):
        wf = make_workflow(three_steps())
        state = await wf.execute()

        a, b = state.step_results
        assert a.screenshots == (f"{wf.id}_stepA.png",)
        assert b.error.screenshot == f"{wf.id}_stepB_error.png"
        assert capture.calls == [("appX", f"{wf.id}_stepA.png"), ("appY", f"{wf.id}_stepB_error.png")]

    async def test_capture_disabled(self, make_workflow, capture):
        await make_workflow(three_steps(), capture_screenshots=False).execute()
        assert capture.calls == []

    async def test_capture_failure_never_masks_step_error(self, make_workflow):
        wf = make_workflow(three_steps(), capture=RecordingCapture(fail=True))
        state = await wf.execute()

        assert state.step_results[0].status == StepStatus.COMPLETED
        assert state.step_results[0].screenshots == ()
        assert state.errors[0].message == "B broke"
        assert state.errors[0].screenshot is None

    async def test_recoverable_flag_is_informational(self, make_workflow):
        steps = three_steps()
        steps[1]["recoverable"] = True
        state = await make_workflow(steps).execute()

        assert state.errors[0].recoverable is True
        assert state.status == WorkflowStatus.FAILED
        assert len(state.step_results) == 2
