"""Local collaborators: git checkout, shell builds and a deployment ledger."""

import json
import os
import subprocess
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .core.artifacts import content_digest
from .core.errors import ActionCancelledError, TerminalActionFailure
from .core.interfaces import ActionContext, Builder, BuildSpec, Deployer, SourceProvider


_OUTPUT_TAIL = 4000


class GitSourceProvider(SourceProvider):
    """Resolves a ref in a local git working copy."""

    def __init__(self, repo_path: str = "."):
        super().__init__()
        self.repo_path = Path(repo_path)

    def fetch(self, ref: Optional[str], context: Optional[ActionContext] = None) -> Dict[str, Any]:
        ref = ref or "HEAD"
        try:
            result = subprocess.run(
                ["git", "rev-parse", "--verify", f"{ref}^{{commit}}"],
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                check=True
            )
        except subprocess.CalledProcessError as e:
            raise TerminalActionFailure(f"Cannot resolve ref '{ref}' in {self.repo_path}: {e.stderr.strip()}")
        except FileNotFoundError:
            raise TerminalActionFailure("git command not found. Please install git first.")

        commit = result.stdout.strip()
        self.logger.info(f"Resolved {ref} to {commit}")
        return {
            "ref": ref,
            "commit": commit,
            "path": str(self.repo_path.resolve())
        }


class ShellBuilder(Builder):
    """Runs the build specification as a shell command.

    The action's environment is merged over the process environment. When the
    input artifact carries a ``path`` the command runs there unless a working
    directory is configured. The command is terminated when the run is
    cancelled or ``timeout`` elapses.
    """

    def __init__(self, cwd: Optional[str] = None, timeout: Optional[float] = None,
                 poll_interval: float = 0.5):
        super().__init__()
        self.cwd = cwd
        self.timeout = timeout
        self.poll_interval = poll_interval

    def run(self, spec: BuildSpec, input_artifact: Any,
            context: Optional[ActionContext] = None) -> Dict[str, Any]:
        if not spec.build_spec:
            raise TerminalActionFailure(f"Action {spec.action_name} has no build_spec to run")

        cwd = self.cwd
        if cwd is None and isinstance(input_artifact, dict):
            cwd = input_artifact.get("path")

        env = dict(os.environ)
        env.update(spec.environment)
        env["CDFLOW_ACTION"] = spec.action_name

        self.logger.info(f"Running build for {spec.action_name}: {spec.build_spec}")
        try:
            process = subprocess.Popen(
                spec.build_spec,
                shell=True,
                cwd=cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True
            )
        except (FileNotFoundError, NotADirectoryError) as e:
            raise TerminalActionFailure(f"Build {spec.action_name} could not start: {str(e)}")

        cancel_event = context.cancel_event if context is not None else None
        stdout, stderr = self._communicate(process, spec, cancel_event)

        if process.returncode != 0:
            raise TerminalActionFailure(
                f"Build {spec.action_name} exited with status {process.returncode}: "
                f"{stderr.strip()[-_OUTPUT_TAIL:]}",
                {"returncode": process.returncode}
            )

        return {
            "action": spec.action_name,
            "command": spec.build_spec,
            "returncode": process.returncode,
            "stdout": stdout[-_OUTPUT_TAIL:],
            "environment": dict(spec.environment),
            "input": input_artifact
        }

    def _communicate(self, process: subprocess.Popen, spec: BuildSpec,
                     cancel_event: Optional[threading.Event]) -> Tuple[str, str]:
        deadline = None if self.timeout is None else time.monotonic() + self.timeout

        while True:
            if cancel_event is not None and cancel_event.is_set():
                self._terminate(process)
                raise ActionCancelledError(f"Build {spec.action_name} terminated because the run was cancelled")

            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._terminate(process)
                    raise TerminalActionFailure(f"Build {spec.action_name} timed out after {self.timeout} seconds")
                wait = min(wait, remaining)

            try:
                return process.communicate(timeout=wait)
            except subprocess.TimeoutExpired:
                continue

    def _terminate(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"Build process {process.pid} ignored SIGTERM; killing it")
            process.kill()
            process.wait()


class LedgerDeployer(Deployer):
    """Records deployments in a JSON-lines ledger file."""

    def __init__(self, ledger_path: str):
        super().__init__()
        self.ledger_path = Path(ledger_path)

    def deploy(self, service_id: str, artifact: Any,
               context: Optional[ActionContext] = None) -> Dict[str, Any]:
        record = {
            "service_id": service_id,
            "artifact_digest": content_digest(artifact),
            "artifact": artifact,
            "deployed_at": datetime.now(timezone.utc).isoformat()
        }

        self.ledger_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.ledger_path, 'a', encoding='utf-8') as f:
            f.write(json.dumps(record, default=str) + '\n')

        self.logger.info(f"Deployed {record['artifact_digest']} to {service_id}")
        return record

    def deployments(self, service_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Recorded deployments, oldest first."""
        if not self.ledger_path.exists():
            return []

        records = []
        with open(self.ledger_path, 'r', encoding='utf-8') as f:
            for line in f:
                if not line.strip():
                    continue
                record = json.loads(line)
                if service_id is None or record["service_id"] == service_id:
                    records.append(record)
        return records
