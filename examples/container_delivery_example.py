"""Example demonstrating a container delivery pipeline with a production approval gate."""

import tempfile
from pathlib import Path

from cdflow.collaborators import LedgerDeployer
from cdflow.core import (
    ActionCapability, ActionDefinition, ArtifactStore, Pipeline, PipelineEngine,
    RunStore, StageDefinition, StageRunner
)
from cdflow.core.interfaces import Builder, SourceProvider


class StaticSourceProvider(SourceProvider):
    """Pretends every ref resolves to the same commit."""

    def fetch(self, ref, context=None):
        return {"ref": ref, "commit": "4f2a9c1", "files": ["Dockerfile", "app.py"]}


class SimulatedBuilder(Builder):
    """Reports success for tests and a tagged image for builds."""

    def run(self, spec, input_artifact, context=None):
        if spec.action_name == "Docker-Build":
            tag = spec.environment.get("IMAGE_TAG", "latest")
            return {"image": f"registry.local/app:{tag}", "commit": input_artifact["commit"]}
        return {"tests": 42, "failures": 0}


def create_pipeline():
    """Create the delivery pipeline definition."""
    return Pipeline(name="container_delivery", stages=(
        StageDefinition("Source", (
            ActionDefinition("Checkout", ActionCapability.SOURCE_FETCH, output_artifact="source_output"),
        )),
        StageDefinition("Code-Quality-Testing", (
            ActionDefinition("Unit-Test", ActionCapability.TEST, input_artifact="source_output",
                             build_spec="make test"),
        )),
        StageDefinition("Docker-Push", (
            ActionDefinition("Docker-Build", ActionCapability.BUILD, input_artifact="source_output",
                             output_artifact="docker_build_output", build_spec="docker build .",
                             environment={"IMAGE_TAG": "1.0.0"}),
        )),
        StageDefinition("Deploy-Test", (
            ActionDefinition("Deploy-Test", ActionCapability.DEPLOY,
                             input_artifact="docker_build_output", service_id="app-test"),
        )),
        StageDefinition("Deploy-Production", (
            ActionDefinition("Approve-Deploy-Prod", ActionCapability.MANUAL_APPROVAL, run_order=1),
            ActionDefinition("Deploy-Prod", ActionCapability.DEPLOY, run_order=2,
                             input_artifact="docker_build_output", service_id="app-prod"),
        )),
    ))


def main():
    """Run the pipeline up to the gate, approve, and inspect the deployments."""
    print("Container Delivery Example")
    print("=" * 40)

    with tempfile.TemporaryDirectory() as temp_dir:
        temp_path = Path(temp_dir)
        deployer = LedgerDeployer(str(temp_path / "deployments.jsonl"))

        # 1. Assemble the engine
        print("1. Creating engine...")
        engine = PipelineEngine(
            runner=StageRunner(
                source_provider=StaticSourceProvider(),
                builder=SimulatedBuilder(),
                deployer=deployer
            ),
            run_store=RunStore(str(temp_path / "runs")),
            artifact_store=ArtifactStore(str(temp_path / "artifacts"))
        )

        # 2. Start and drive a run
        print("\n2. Starting run...")
        run_id = engine.start_run(create_pipeline(), {"ref": "master", "trigger": "source-change"})
        state = engine.advance(run_id)
        print(f"   Run {run_id} is {state.status.value}")
        for stage in state.stages:
            print(f"     - {stage.name}: {stage.status.value}")

        # 3. Approve the production deploy
        request = state.pending_approvals()[0]
        print(f"\n3. Approving request {request.request_id}...")
        state = engine.decide(request.request_id, "approved", "release-manager", "Test deploy looks good")
        print(f"   Run {run_id} is {state.status.value}")

        # 4. Inspect deployments
        print("\n4. Deployments:")
        for record in deployer.deployments():
            print(f"     - {record['service_id']}: {record['artifact']['image']}")


if __name__ == "__main__":
    main()
