"""Tests for the pipeline engine."""

import pytest
import shutil
import tempfile
import threading
import time
from pathlib import Path

from cdflow.core.artifacts import ArtifactStore
from cdflow.core.errors import (
    ActionCancelledError,
    AlreadyRunningError,
    ApprovalNotFoundError,
    ArtifactExpiredError,
    ConfigurationError,
    FailureReason,
    InvalidStateError,
    RetryPolicy,
    RunNotFoundError,
    TerminalActionFailure,
    TransientCollaboratorError,
)
from cdflow.core.gate import REASON_WITHDRAWN, ApprovalGate
from cdflow.core.interfaces import (
    ActionCapability,
    ActionDefinition,
    ActionStatus,
    ApprovalState,
    Builder,
    Deployer,
    Pipeline,
    RunPolicy,
    RunStatus,
    SourceProvider,
    StageDefinition,
    StageStatus,
)
from cdflow.core.orchestrator import PipelineEngine
from cdflow.core.runner import StageRunner
from cdflow.core.state import RunStore


class RecordingSourceProvider(SourceProvider):
    """Source provider that records every fetch."""

    def __init__(self):
        super().__init__()
        self.calls = []

    def fetch(self, ref, context=None):
        self.calls.append(ref)
        return {"ref": ref, "commit": "4f2a9c1"}


class RecordingBuilder(Builder):
    """Builder that records calls and raises scripted failures."""

    def __init__(self, failures=None, barrier=None):
        super().__init__()
        self.calls = []
        self.failures = failures or {}
        self.barrier = barrier
        self._lock = threading.Lock()

    def run(self, spec, input_artifact, context=None):
        with self._lock:
            self.calls.append(spec.action_name)
        if self.barrier is not None:
            self.barrier.wait()

        scripted = self.failures.get(spec.action_name)
        if isinstance(scripted, list) and scripted:
            raise scripted.pop(0)
        if isinstance(scripted, Exception):
            raise scripted

        return {"action": spec.action_name, "input": input_artifact}


class RecordingDeployer(Deployer):
    """Deployer that records deployments."""

    def __init__(self):
        super().__init__()
        self.calls = []

    def deploy(self, service_id, artifact, context=None):
        self.calls.append((service_id, artifact))
        return {"service_id": service_id}


class BlockingBuilder(Builder):
    """Builder whose actions run until the run is cancelled."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()

    def run(self, spec, input_artifact, context=None):
        self.started.set()
        if not context.cancel_event.wait(timeout=10):
            return {"action": spec.action_name}
        raise ActionCancelledError(f"{spec.action_name} stopped")


class ImageManifest:
    """Build output that is not JSON-encodable."""

    def __init__(self, image, layers):
        self.image = image
        self.layers = layers

    def __eq__(self, other):
        return isinstance(other, ImageManifest) and (self.image, self.layers) == (other.image, other.layers)


class ManifestBuilder(RecordingBuilder):
    """Builder whose Docker-Build output is an arbitrary Python object."""

    def __init__(self, output):
        super().__init__()
        self.output = output

    def run(self, spec, input_artifact, context=None):
        super().run(spec, input_artifact, context)
        if spec.action_name == "Docker-Build":
            return self.output
        return {"action": spec.action_name}


def wait_until(condition, timeout=5.0):
    deadline = time.time() + timeout
    while not condition():
        if time.time() >= deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.01)


def create_delivery_pipeline(name: str = "delivery", gate_timeout: float = None) -> Pipeline:
    """Source, test, build, test deploy and a gated production deploy."""
    return Pipeline(name=name, stages=(
        StageDefinition("Source", (
            ActionDefinition("Checkout", ActionCapability.SOURCE_FETCH, output_artifact="source_output"),
        )),
        StageDefinition("Code-Quality-Testing", (
            ActionDefinition("Unit-Test", ActionCapability.TEST, input_artifact="source_output",
                             build_spec="make test"),
        )),
        StageDefinition("Docker-Push", (
            ActionDefinition("Docker-Build", ActionCapability.BUILD, input_artifact="source_output",
                             output_artifact="docker_build_output", build_spec="docker build ."),
        )),
        StageDefinition("Deploy-Test", (
            ActionDefinition("Deploy-Test", ActionCapability.DEPLOY,
                             input_artifact="docker_build_output", service_id="app-test"),
        )),
        StageDefinition("Deploy-Production", (
            ActionDefinition("Approve-Deploy-Prod", ActionCapability.MANUAL_APPROVAL, run_order=1,
                             timeout_seconds=gate_timeout),
            ActionDefinition("Deploy-Prod", ActionCapability.DEPLOY, run_order=2,
                             input_artifact="docker_build_output", service_id="app-prod"),
        )),
    ))


class TestPipelineEngine:
    """Test run sequencing, gates and failure propagation."""

    def setup_method(self):
        """Set up test fixtures."""
        self.source = RecordingSourceProvider()
        self.builder = RecordingBuilder()
        self.deployer = RecordingDeployer()
        self.runner = StageRunner(
            source_provider=self.source,
            builder=self.builder,
            deployer=self.deployer,
            retry_policy=RetryPolicy(max_retries=2, retry_delay=0.0)
        )
        self.engine = PipelineEngine(runner=self.runner, max_workers=2)
        self.pipeline = create_delivery_pipeline()
        self.engine.register_pipeline(self.pipeline)

    def _start(self, trigger=None):
        return self.engine.start_run(self.pipeline.name, trigger or {"ref": "main"})

    def test_run_suspends_at_approval_gate(self):
        """Test that a run stops before the gated production deploy."""
        run_id = self._start()
        state = self.engine.advance(run_id)

        assert state.status == RunStatus.RUNNING
        assert state.current_stage_index == 4
        assert state.stages[4].status == StageStatus.AWAITING_APPROVAL
        assert [stage.status for stage in state.stages[:4]] == [StageStatus.COMPLETED] * 4
        assert [service for service, _ in self.deployer.calls] == ["app-test"]
        assert self.source.calls == ["main"]

        pending = state.pending_approvals()
        assert len(pending) == 1
        assert pending[0].stage_name == "Deploy-Production"
        assert pending[0].action_name == "Approve-Deploy-Prod"
        assert state.action_state(4, 1).status == ActionStatus.NOT_STARTED

    def test_stages_run_in_order(self):
        """Test that stages execute strictly in definition order."""
        run_id = self._start()
        self.engine.advance(run_id)

        assert self.builder.calls == ["Unit-Test", "Docker-Build"]
        state = self.engine.get_status(run_id)
        started = [state.action_state(i, 0).started_at for i in range(4)]
        assert started == sorted(started)

    def test_approval_deploys_build_artifact_once(self):
        """Test that approving resumes the run and deploys the build output."""
        run_id = self._start()
        state = self.engine.advance(run_id)
        request_id = state.pending_approvals()[0].request_id

        state = self.engine.decide(request_id, "approved", "release-manager", "ship it")

        assert state.status == RunStatus.SUCCEEDED
        assert state.reason is None
        assert state.stages[4].status == StageStatus.COMPLETED

        prod = [artifact for service, artifact in self.deployer.calls if service == "app-prod"]
        assert len(prod) == 1
        assert prod[0] == {"action": "Docker-Build", "input": {"ref": "main", "commit": "4f2a9c1"}}

        request = state.approvals[request_id]
        assert request.state == ApprovalState.APPROVED
        assert request.approver == "release-manager"
        assert request.comment == "ship it"

    def test_rejection_fails_run(self):
        """Test that a rejected approval fails the run without deploying."""
        run_id = self._start()
        state = self.engine.advance(run_id)
        request_id = state.pending_approvals()[0].request_id

        state = self.engine.decide(request_id, "rejected", "release-manager")

        assert state.status == RunStatus.FAILED
        assert state.reason == FailureReason.REJECTED_BY_APPROVER
        assert state.stages[4].status == StageStatus.FAILED
        assert "app-prod" not in [service for service, _ in self.deployer.calls]
        assert state.action_state(4, 1).status == ActionStatus.NOT_STARTED

    def test_failing_test_stops_pipeline(self):
        """Test that a failing test action fails the run and skips later stages."""
        self.builder.failures["Unit-Test"] = TerminalActionFailure("3 tests failed")
        run_id = self._start()

        state = self.engine.advance(run_id)

        assert state.status == RunStatus.FAILED
        assert state.reason == FailureReason.ACTION_FAILED
        assert "3 tests failed" in state.reason_detail
        assert state.stages[1].status == StageStatus.FAILED
        assert [stage.status for stage in state.stages[2:]] == [StageStatus.NOT_STARTED] * 3
        assert self.builder.calls == ["Unit-Test"]
        assert self.deployer.calls == []
        assert state.pending_approvals() == []

    def test_advance_is_idempotent(self):
        """Test that repeated advances never re-execute completed actions."""
        run_id = self._start()
        first = self.engine.advance(run_id)
        second = self.engine.advance(run_id)

        assert self.source.calls == ["main"]
        assert self.builder.calls == ["Unit-Test", "Docker-Build"]
        assert len(self.deployer.calls) == 1
        assert list(second.approvals) == list(first.approvals)
        assert second.stages == first.stages

        request_id = second.pending_approvals()[0].request_id
        self.engine.decide(request_id, "approved", "release-manager")
        finished = self.engine.advance(run_id)

        assert finished.status == RunStatus.SUCCEEDED
        assert len(self.deployer.calls) == 2

    def test_decision_on_closed_request_rejected(self):
        """Test that a request can only be decided once."""
        run_id = self._start()
        state = self.engine.advance(run_id)
        request_id = state.pending_approvals()[0].request_id
        self.engine.decide(request_id, "approved", "release-manager")

        with pytest.raises(InvalidStateError):
            self.engine.decide(request_id, "rejected", "someone-else")

    def test_decide_unknown_request(self):
        """Test deciding a request that does not exist."""
        with pytest.raises(ApprovalNotFoundError):
            self.engine.decide("missing", "approved", "release-manager")

    def test_transient_errors_are_retried(self):
        """Test that transient collaborator failures are retried."""
        self.builder.failures["Docker-Build"] = [
            TransientCollaboratorError("build service unavailable"),
            ConnectionError("connection reset"),
        ]
        run_id = self._start()

        state = self.engine.advance(run_id)

        assert state.action_state(2, 0).status == ActionStatus.SUCCEEDED
        assert state.action_state(2, 0).attempts == 3
        assert state.stages[4].status == StageStatus.AWAITING_APPROVAL
        assert len(self.runner.error_handler.error_history) == 2

    def test_retries_are_bounded(self):
        """Test that exhausting retries fails the action."""
        self.builder.failures["Docker-Build"] = [ConnectionError("connection reset")] * 5
        run_id = self._start()

        state = self.engine.advance(run_id)

        assert state.status == RunStatus.FAILED
        assert state.reason == FailureReason.ACTION_FAILED
        assert state.action_state(2, 0).attempts == 3
        assert self.builder.calls.count("Docker-Build") == 3

    def test_terminal_failure_not_retried(self):
        """Test that terminal failures are not retried."""
        self.builder.failures["Docker-Build"] = TerminalActionFailure("exit status 2")
        run_id = self._start()

        state = self.engine.advance(run_id)

        assert state.action_state(2, 0).attempts == 1
        assert self.builder.calls.count("Docker-Build") == 1

    def test_already_running(self):
        """Test that a second active run is refused."""
        run_id = self._start()
        self.engine.advance(run_id)

        with pytest.raises(AlreadyRunningError):
            self._start()

    def test_concurrent_runs_allowed(self):
        """Test pipelines that allow concurrent runs."""
        pipeline = Pipeline(name="concurrent", allow_concurrent_runs=True, stages=(
            StageDefinition("Source", (
                ActionDefinition("Checkout", ActionCapability.SOURCE_FETCH, output_artifact="src"),
            )),
        ))
        first = self.engine.start_run(pipeline)
        second = self.engine.start_run(pipeline)

        assert second > first

    def test_new_run_allowed_after_finish(self):
        """Test that a finished run does not block new runs."""
        self.builder.failures["Unit-Test"] = TerminalActionFailure("failed")
        run_id = self._start()
        self.engine.advance(run_id)

        assert self._start() > run_id

    def test_cancel_withdraws_pending_approval(self):
        """Test cancelling a run suspended at a gate."""
        run_id = self._start()
        state = self.engine.advance(run_id)
        request_id = state.pending_approvals()[0].request_id

        state = self.engine.cancel(run_id)

        assert state.status == RunStatus.CANCELLED
        assert state.reason == FailureReason.CANCELLED
        assert state.stages[4].status == StageStatus.FAILED
        assert state.approvals[request_id].state == ApprovalState.REJECTED
        assert state.approvals[request_id].reason == REASON_WITHDRAWN
        assert self.engine.gate.pending() == []

        with pytest.raises(InvalidStateError):
            self.engine.decide(request_id, "approved", "release-manager")

        with pytest.raises(InvalidStateError):
            self.engine.cancel(run_id)

    def test_cancel_before_advance(self):
        """Test that a cancelled run never executes an action."""
        run_id = self._start()
        self.engine.cancel(run_id)

        state = self.engine.advance(run_id)

        assert state.status == RunStatus.CANCELLED
        assert self.source.calls == []

    def _advance_in_background(self, engine, run_id):
        results = []

        def drive():
            results.append(engine.advance(run_id))

        worker = threading.Thread(target=drive)
        worker.start()
        return worker, results

    def test_cancel_during_retry_wait(self):
        """Test that cancelling while an action waits to retry ends the run as cancelled."""
        runner = StageRunner(source_provider=self.source, builder=self.builder, deployer=self.deployer,
                             retry_policy=RetryPolicy(max_retries=3, retry_delay=30.0))
        engine = PipelineEngine(runner=runner)
        engine.register_pipeline(self.pipeline)
        self.builder.failures["Unit-Test"] = TransientCollaboratorError("build service unavailable")
        run_id = engine.start_run(self.pipeline.name, {"ref": "main"})

        worker, results = self._advance_in_background(engine, run_id)
        wait_until(lambda: self.builder.calls == ["Unit-Test"])
        state = engine.cancel(run_id)
        worker.join(timeout=10)

        assert state.status == RunStatus.CANCELLED
        assert state.reason == FailureReason.CANCELLED
        assert results[0].status == RunStatus.CANCELLED
        assert state.action_state(1, 0).status == ActionStatus.CANCELLED
        assert self.builder.calls == ["Unit-Test"]
        assert self.deployer.calls == []

    def test_cancel_during_running_action(self):
        """Test that an in-flight action is told to stop and the run ends as cancelled."""
        builder = BlockingBuilder()
        engine = PipelineEngine(runner=StageRunner(source_provider=self.source, builder=builder,
                                                   deployer=self.deployer))
        engine.register_pipeline(self.pipeline)
        run_id = engine.start_run(self.pipeline.name, {"ref": "main"})

        worker, results = self._advance_in_background(engine, run_id)
        assert builder.started.wait(timeout=5)
        state = engine.cancel(run_id)
        worker.join(timeout=10)

        assert not worker.is_alive()
        assert state.status == RunStatus.CANCELLED
        assert results[0].status == RunStatus.CANCELLED
        assert state.action_state(1, 0).status == ActionStatus.CANCELLED
        assert "Unit-Test stopped" in state.action_state(1, 0).error
        assert state.stages[1].status == StageStatus.FAILED
        assert self.deployer.calls == []

    def test_opaque_artifact_reaches_deploy(self):
        """Test that build outputs need not be JSON-encodable."""
        manifest = ImageManifest("registry.local/app:1", ("base", "app"))
        engine = PipelineEngine(runner=StageRunner(source_provider=self.source,
                                                   builder=ManifestBuilder(manifest),
                                                   deployer=self.deployer))
        engine.register_pipeline(self.pipeline)
        run_id = engine.start_run(self.pipeline.name, {"ref": "main"})

        state = engine.advance(run_id)
        engine.decide(state.pending_approvals()[0].request_id, "approved", "release-manager")

        assert engine.get_status(run_id).status == RunStatus.SUCCEEDED
        assert self.deployer.calls == [("app-test", manifest), ("app-prod", manifest)]

    def test_unencodable_output_fails_action(self):
        """Test that an output the store cannot encode fails the action cleanly."""
        engine = PipelineEngine(runner=StageRunner(source_provider=self.source,
                                                   builder=ManifestBuilder({"lock": threading.Lock()}),
                                                   deployer=self.deployer))
        engine.register_pipeline(self.pipeline)
        run_id = engine.start_run(self.pipeline.name, {"ref": "main"})

        state = engine.advance(run_id)

        assert state.status == RunStatus.FAILED
        assert state.reason == FailureReason.ACTION_FAILED
        assert state.action_state(2, 0).status == ActionStatus.FAILED
        assert "Could not store artifact 'docker_build_output'" in state.action_state(2, 0).error
        assert self.deployer.calls == []

    def test_approval_timeout(self):
        """Test that an expired approval fails the run."""
        pipeline = create_delivery_pipeline("timed", gate_timeout=0.01)
        self.engine.register_pipeline(pipeline)
        run_id = self.engine.start_run(pipeline.name, {"ref": "main"})
        self.engine.advance(run_id)

        time.sleep(0.05)
        state = self.engine.advance(run_id)

        assert state.status == RunStatus.FAILED
        assert state.reason == FailureReason.APPROVAL_TIMEOUT
        assert "app-prod" not in [service for service, _ in self.deployer.calls]

    def test_missing_collaborator_fails_action(self):
        """Test a deploy action without a deployer."""
        runner = StageRunner(source_provider=self.source, builder=self.builder,
                             retry_policy=RetryPolicy(max_retries=0))
        engine = PipelineEngine(runner=runner)
        engine.register_pipeline(self.pipeline)
        run_id = engine.start_run(self.pipeline.name)

        state = engine.advance(run_id)

        assert state.status == RunStatus.FAILED
        assert state.reason == FailureReason.ACTION_FAILED
        assert "No collaborator configured" in state.action_state(3, 0).error

    def test_unknown_pipeline(self):
        """Test starting a run of an unregistered pipeline."""
        with pytest.raises(ConfigurationError):
            self.engine.start_run("unknown")

    def test_unknown_run(self):
        """Test status of a run that does not exist."""
        with pytest.raises(RunNotFoundError):
            self.engine.get_status(999)

        with pytest.raises(RunNotFoundError):
            self.engine.advance(999)

    def test_execution_history(self):
        """Test run summaries, newest first."""
        self.builder.failures["Unit-Test"] = TerminalActionFailure("failed")
        first = self._start()
        self.engine.advance(first)
        second = self._start()

        history = self.engine.get_execution_history(self.pipeline.name)

        assert [summary["run_id"] for summary in history] == [second, first]
        assert history[0]["status"] == RunStatus.PENDING.value
        assert history[1]["reason"] == FailureReason.ACTION_FAILED
        assert len(self.engine.get_execution_history(limit=1)) == 1


class TestRunOrderScheduling:
    """Test scheduling of actions inside a stage."""

    def _pipeline(self, actions, run_policy=RunPolicy.PARALLEL):
        return Pipeline(name="scheduling", stages=(
            StageDefinition("Source", (
                ActionDefinition("Checkout", ActionCapability.SOURCE_FETCH, output_artifact="src"),
            )),
            StageDefinition("Verify", tuple(actions), run_policy),
        ))

    def test_same_run_order_runs_concurrently(self):
        """Test that actions sharing a run order run at the same time."""
        # Each builder call blocks until the other one arrives.
        builder = RecordingBuilder(barrier=threading.Barrier(2, timeout=5))
        engine = PipelineEngine(runner=StageRunner(source_provider=RecordingSourceProvider(),
                                                   builder=builder), max_workers=4)
        pipeline = self._pipeline([
            ActionDefinition("Lint", ActionCapability.TEST, input_artifact="src"),
            ActionDefinition("Unit", ActionCapability.TEST, input_artifact="src"),
        ])
        run_id = engine.start_run(pipeline)

        state = engine.advance(run_id)

        assert state.status == RunStatus.SUCCEEDED
        assert sorted(builder.calls) == ["Lint", "Unit"]

    def test_run_order_groups_run_in_sequence(self):
        """Test that lower run orders complete before higher ones start."""
        builder = RecordingBuilder()
        engine = PipelineEngine(runner=StageRunner(source_provider=RecordingSourceProvider(),
                                                   builder=builder))
        pipeline = self._pipeline([
            ActionDefinition("Package", ActionCapability.BUILD, run_order=2, input_artifact="compiled"),
            ActionDefinition("Compile", ActionCapability.BUILD, run_order=1, input_artifact="src",
                             output_artifact="compiled"),
        ])
        run_id = engine.start_run(pipeline)

        state = engine.advance(run_id)

        assert state.status == RunStatus.SUCCEEDED
        assert builder.calls == ["Compile", "Package"]

    def test_failure_stops_later_groups(self):
        """Test that a failed group prevents later groups of the stage."""
        builder = RecordingBuilder(failures={"Compile": TerminalActionFailure("compile error")})
        engine = PipelineEngine(runner=StageRunner(source_provider=RecordingSourceProvider(),
                                                   builder=builder))
        pipeline = self._pipeline([
            ActionDefinition("Compile", ActionCapability.BUILD, run_order=1, input_artifact="src"),
            ActionDefinition("Package", ActionCapability.BUILD, run_order=2, input_artifact="src"),
        ])
        run_id = engine.start_run(pipeline)

        state = engine.advance(run_id)

        assert state.status == RunStatus.FAILED
        assert builder.calls == ["Compile"]
        assert state.action_state(1, 1).status == ActionStatus.NOT_STARTED

    def test_sequential_policy(self):
        """Test that the sequential policy runs one action at a time."""
        builder = RecordingBuilder()
        engine = PipelineEngine(runner=StageRunner(source_provider=RecordingSourceProvider(),
                                                   builder=builder))
        pipeline = self._pipeline([
            ActionDefinition("First", ActionCapability.TEST, input_artifact="src"),
            ActionDefinition("Second", ActionCapability.TEST, input_artifact="src"),
        ], run_policy=RunPolicy.SEQUENTIAL)
        run_id = engine.start_run(pipeline)

        engine.advance(run_id)

        assert builder.calls == ["First", "Second"]


class TestRunPersistence:
    """Test resuming runs from persisted records."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.runs_dir = str(Path(self.temp_dir) / "runs")
        self.artifacts_dir = str(Path(self.temp_dir) / "artifacts")
        self.pipeline = create_delivery_pipeline()

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _engine(self, builder=None, deployer=None, source=None, retain_runs=None):
        engine = PipelineEngine(
            runner=StageRunner(source_provider=source or RecordingSourceProvider(),
                               builder=builder or RecordingBuilder(),
                               deployer=deployer or RecordingDeployer()),
            run_store=RunStore(self.runs_dir),
            artifact_store=ArtifactStore(self.artifacts_dir),
            gate=ApprovalGate(),
            retain_runs=retain_runs,
            poll_interval=0.05
        )
        engine.register_pipeline(self.pipeline)
        return engine

    def test_resume_after_restart(self):
        """Test that a new engine resumes a suspended run from disk."""
        first = self._engine()
        run_id = first.start_run(self.pipeline.name, {"ref": "release"})
        request_id = first.advance(run_id).pending_approvals()[0].request_id

        builder = RecordingBuilder()
        deployer = RecordingDeployer()
        second = self._engine(builder=builder, deployer=deployer)

        assert [request.request_id for request in second.gate.pending()] == [request_id]

        state = second.decide(request_id, "approved", "release-manager")

        assert state.status == RunStatus.SUCCEEDED
        assert builder.calls == []
        assert deployer.calls == [("app-prod", {"action": "Docker-Build",
                                                "input": {"ref": "release", "commit": "4f2a9c1"}})]

    def test_interrupted_action_is_not_rerun(self):
        """Test that an action left in progress by a crash is failed, not repeated."""
        source = RecordingSourceProvider()
        engine = self._engine(source=source)
        run_id = engine.start_run(self.pipeline.name)

        state = engine.run_store.load(run_id)
        state.status = RunStatus.RUNNING
        state.stages[0].status = StageStatus.IN_PROGRESS
        state.action_state(0, 0).status = ActionStatus.IN_PROGRESS
        engine.run_store.save(state)

        restarted = self._engine(source=source)
        state = restarted.advance(run_id)

        assert state.status == RunStatus.FAILED
        assert state.reason == FailureReason.ACTION_FAILED
        assert source.calls == []

    def test_run_ids_survive_restart(self):
        """Test that run ids keep increasing across engine instances."""
        first = self._engine()
        run_id = first.start_run(self.pipeline.name)
        first.cancel(run_id)

        second = self._engine()
        assert second.start_run(self.pipeline.name) == run_id + 1

    def test_retention_retires_old_runs(self):
        """Test that runs beyond the retention limit lose their artifacts."""
        builder = RecordingBuilder(failures={"Unit-Test": TerminalActionFailure("failed")})
        engine = self._engine(builder=builder, retain_runs=1)

        first = engine.start_run(self.pipeline.name)
        first_state = engine.advance(first)
        ref = first_state.artifact("source_output")
        assert engine.artifact_store.get(ref)["ref"] is None

        second = engine.start_run(self.pipeline.name)
        engine.advance(second)

        assert engine.get_status(first).retired
        assert not engine.get_status(second).retired
        with pytest.raises(ArtifactExpiredError):
            engine.artifact_store.get(ref)

    def test_retire_active_run_refused(self):
        """Test that an active run cannot be retired."""
        engine = self._engine()
        run_id = engine.start_run(self.pipeline.name)

        with pytest.raises(InvalidStateError):
            engine.retire_run(run_id)

    def test_cancel_applies_retention(self):
        """Test that cancelling a run retires runs beyond the retention limit."""
        builder = RecordingBuilder(failures={"Unit-Test": TerminalActionFailure("failed")})
        engine = self._engine(builder=builder, retain_runs=1)
        first = engine.start_run(self.pipeline.name)
        engine.advance(first)
        second = engine.start_run(self.pipeline.name)

        engine.cancel(second)

        assert engine.get_status(first).retired
        assert not engine.get_status(second).retired

    def test_opaque_artifact_survives_restart(self):
        """Test that a pickled build output is handed to a deploy after a restart."""
        manifest = ImageManifest("registry.local/app:1", ("base", "app"))
        first = self._engine(builder=ManifestBuilder(manifest))
        run_id = first.start_run(self.pipeline.name)
        request_id = first.advance(run_id).pending_approvals()[0].request_id

        deployer = RecordingDeployer()
        second = self._engine(deployer=deployer)
        state = second.decide(request_id, "approved", "release-manager")

        assert state.status == RunStatus.SUCCEEDED
        assert deployer.calls == [("app-prod", manifest)]

    def test_unencodable_output_is_recorded_as_failed(self):
        """Test that the persisted record never keeps the action in progress."""
        engine = self._engine(builder=ManifestBuilder(threading.Lock()))
        run_id = engine.start_run(self.pipeline.name)

        engine.advance(run_id)

        state = RunStore(self.runs_dir).load(run_id)
        assert state.status == RunStatus.FAILED
        assert state.action_state(2, 0).status == ActionStatus.FAILED
        assert not (Path(self.artifacts_dir) / f"run-{run_id:06d}" / "2.0.json").exists()


class TestSharedStateDirectory:
    """Test engines in separate processes coordinating through one state directory."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.runs_dir = str(Path(self.temp_dir) / "runs")
        self.artifacts_dir = str(Path(self.temp_dir) / "artifacts")
        self.pipeline = create_delivery_pipeline()
        self.timed_pipeline = create_delivery_pipeline("timed", gate_timeout=1.0)

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _engine(self, builder=None, deployer=None):
        engine = PipelineEngine(
            runner=StageRunner(source_provider=RecordingSourceProvider(),
                               builder=builder or RecordingBuilder(),
                               deployer=deployer or RecordingDeployer()),
            run_store=RunStore(self.runs_dir),
            artifact_store=ArtifactStore(self.artifacts_dir),
            gate=ApprovalGate(),
            poll_interval=0.05
        )
        engine.register_pipeline(self.pipeline)
        engine.register_pipeline(self.timed_pipeline)
        return engine

    def test_polling_engine_sees_decision(self):
        """Test that a run approved elsewhere is reported finished to the polling engine."""
        poller = self._engine()
        run_id = poller.start_run(self.pipeline.name, {"ref": "main"})
        request_id = poller.advance(run_id).pending_approvals()[0].request_id

        deployer = RecordingDeployer()
        approver = self._engine(deployer=deployer)
        assert approver.decide(request_id, "approved", "release-manager").status == RunStatus.SUCCEEDED

        state = poller.wait(run_id, timeout=5, poll_interval=0.01)

        assert state.status == RunStatus.SUCCEEDED
        assert poller.get_status(run_id).status == RunStatus.SUCCEEDED
        assert poller.gate.pending() == []
        assert poller.gate.get(request_id).approver == "release-manager"
        assert [service for service, _ in deployer.calls] == ["app-prod"]

    def test_stale_engine_does_not_overwrite_decision(self):
        """Test that an expired gate copy never fails a run approved elsewhere."""
        poller = self._engine()
        run_id = poller.start_run(self.timed_pipeline.name)
        request_id = poller.advance(run_id).pending_approvals()[0].request_id

        self._engine().decide(request_id, "approved", "release-manager")
        time.sleep(1.1)
        state = poller.advance(run_id)

        assert state.status == RunStatus.SUCCEEDED
        assert state.reason is None
        assert RunStore(self.runs_dir).load(run_id).status == RunStatus.SUCCEEDED

    def test_decide_request_opened_after_engine_started(self):
        """Test deciding a request the engine did not hold when it was created."""
        approver = self._engine()
        poller = self._engine()
        run_id = poller.start_run(self.pipeline.name)
        request_id = poller.advance(run_id).pending_approvals()[0].request_id

        state = approver.decide(request_id, "rejected", "release-manager")

        assert state.status == RunStatus.FAILED
        assert state.reason == FailureReason.REJECTED_BY_APPROVER
        with pytest.raises(InvalidStateError):
            poller.decide(request_id, "approved", "someone-else")

    def test_cancel_from_another_engine(self):
        """Test that a cancel issued elsewhere stops the coordinating engine's in-flight action."""
        builder = BlockingBuilder()
        coordinator = self._engine(builder=builder)
        run_id = coordinator.start_run(self.pipeline.name)
        results = []

        def drive():
            results.append(coordinator.advance(run_id))

        worker = threading.Thread(target=drive)
        worker.start()
        assert builder.started.wait(timeout=5)

        state = self._engine().cancel(run_id)
        worker.join(timeout=10)

        assert state.status == RunStatus.CANCELLED
        assert results[0].status == RunStatus.CANCELLED
        assert results[0].action_state(1, 0).status == ActionStatus.CANCELLED
        assert not list(Path(self.runs_dir).glob("*.cancel"))
        assert not list(Path(self.runs_dir).glob("*.lock"))

    def test_run_ids_are_unique_across_engines(self):
        first = self._engine()
        second = self._engine()
        pipeline = Pipeline(name="concurrent", allow_concurrent_runs=True,
                            stages=self.pipeline.stages)

        ids = [first.start_run(pipeline), second.start_run(pipeline), first.start_run(pipeline)]

        assert ids == [1, 2, 3]

    def test_second_active_run_refused_across_engines(self):
        first = self._engine()
        first.start_run(self.pipeline.name)

        with pytest.raises(AlreadyRunningError):
            self._engine().start_run(self.pipeline.name)
