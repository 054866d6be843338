"""
Tests for the background workflow runner.
"""

import threading

import pytest

from services.forumsync.utils import AuthError
from services.forumsync.workflows import WorkflowRunner, WorkflowStatus


@pytest.fixture
def runner():
    runner = WorkflowRunner(max_workers=2, step_max_attempts=3)
    yield runner
    runner.shutdown(wait=True)


class TestWorkflowRunner:
    """Test start, wait and retry behavior."""

    def test_returns_step_result(self, runner):
        """wait should return the step result."""
        workflow_id = runner.start(lambda a, b: a + b, a=2, b=3)

        assert runner.wait(workflow_id, timeout=5) == 5
        run = runner.status(workflow_id)
        assert run.status is WorkflowStatus.COMPLETED
        assert run.result == 5
        assert run.attempts == 1
        assert run.finished_at is not None

    def test_uses_given_workflow_id(self, runner):
        """A caller-chosen workflow id should be used."""
        workflow_id = runner.start(lambda: None, workflow_id="wf-fixed", name="noop")

        assert workflow_id == "wf-fixed"
        runner.wait(workflow_id, timeout=5)
        assert runner.status("wf-fixed").name == "noop"

    def test_duplicate_workflow_id(self, runner):
        """Reusing a workflow id should be rejected."""
        runner.start(lambda: None, workflow_id="wf-dup")

        with pytest.raises(ValueError):
            runner.start(lambda: None, workflow_id="wf-dup")

    def test_flaky_step_is_rerun(self, runner):
        """A failing step should be re-run up to the limit."""
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError("connection dropped")
            return "done"

        workflow_id = runner.start(flaky)

        assert runner.wait(workflow_id, timeout=5) == "done"
        assert runner.status(workflow_id).attempts == 3

    def test_gives_up_after_max_attempts(self, runner):
        """The run should fail once attempts are spent."""
        def always_fails():
            raise RuntimeError("still broken")

        workflow_id = runner.start(always_fails)

        with pytest.raises(RuntimeError, match="still broken"):
            runner.wait(workflow_id, timeout=5)
        run = runner.status(workflow_id)
        assert run.status is WorkflowStatus.FAILED
        assert run.attempts == 3
        assert run.error == "still broken"

    def test_auth_error_is_not_retried(self, runner):
        """AuthError should fail the run on the first attempt."""
        def rejected():
            raise AuthError("Invalid token: expired", 401)

        workflow_id = runner.start(rejected)

        with pytest.raises(AuthError):
            runner.wait(workflow_id, timeout=5)
        assert runner.status(workflow_id).attempts == 1

    def test_start_does_not_block(self, runner):
        """start should return while the step is running."""
        release = threading.Event()
        workflow_id = runner.start(release.wait, timeout=5)

        assert runner.status(workflow_id).status is WorkflowStatus.RUNNING
        release.set()
        assert runner.wait(workflow_id, timeout=5) is True

    def test_unknown_workflow(self, runner):
        """Unknown ids should have no status and fail to wait."""
        assert runner.status("missing") is None
        with pytest.raises(KeyError):
            runner.wait("missing")

    def test_invalid_attempts(self):
        """step_max_attempts below one should be rejected."""
        with pytest.raises(ValueError):
            WorkflowRunner(step_max_attempts=0)
