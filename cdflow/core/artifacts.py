"""Write-once, content-addressed artifact store shared by the actions of a run."""

import base64
import hashlib
import json
import logging
import pickle
import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from .errors import (
    ArtifactEncodingError,
    ArtifactExpiredError,
    ArtifactIntegrityError,
    ArtifactNotFoundError,
    DuplicateArtifactError,
)
from .state import ArtifactRef


_RETIRED_MARKER = ".retired"

# Encodings of a stored payload, keyed by how ``data`` is written to disk.
_TEXT_ENCODINGS = ("json", "text")
_BINARY_ENCODINGS = ("bytes", "pickle")


def encode_payload(payload: Any) -> Tuple[str, bytes]:
    """Canonical ``(encoding, data)`` form of a payload.

    JSON is used when the payload survives a JSON round trip unchanged;
    anything else is pickled.
    """
    if isinstance(payload, (bytes, bytearray)):
        return "bytes", bytes(payload)
    if isinstance(payload, str):
        return "text", payload.encode('utf-8')

    try:
        text = json.dumps(payload, sort_keys=True, separators=(',', ':'))
        if json.loads(text) == payload:
            return "json", text.encode('utf-8')
    except (TypeError, ValueError):
        pass

    try:
        return "pickle", pickle.dumps(payload, protocol=pickle.HIGHEST_PROTOCOL)
    except (pickle.PicklingError, TypeError, AttributeError) as e:
        raise ArtifactEncodingError(f"Cannot encode artifact payload of type "
                                    f"{type(payload).__name__}: {str(e)}")


def decode_payload(encoding: str, data: bytes) -> Any:
    if encoding == "bytes":
        return data
    if encoding == "text":
        return data.decode('utf-8')
    if encoding == "json":
        return json.loads(data.decode('utf-8'))
    if encoding == "pickle":
        return pickle.loads(data)
    raise ArtifactEncodingError(f"Unknown artifact encoding {encoding}")


def _digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def content_digest(payload: Any) -> str:
    """sha256 digest identifying a payload by content."""
    return _digest(encode_payload(payload)[1])


class ArtifactStore:
    """Stores artifact payloads keyed by ``(run_id, action_id)``.

    Payloads are encoded once when written and the digest is taken over that
    encoding; every ``get`` decodes a fresh copy. Retiring a run
    garbage-collects its payloads; references into a retired run raise
    ``ArtifactExpiredError``. When ``directory`` is given payloads are also
    written to disk, and artifacts written by another process sharing the
    directory are picked up on first use.
    """

    def __init__(self, directory: Optional[str] = None):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.directory = Path(directory) if directory else None
        self._payloads: Dict[Tuple[int, str], Tuple[str, bytes]] = {}
        self._refs: Dict[Tuple[int, str], ArtifactRef] = {}
        self._retired: Set[int] = set()
        self._lock = threading.Lock()

        if self.directory:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._load_all()

    def _run_dir(self, run_id: int) -> Path:
        return self.directory / f"run-{run_id:06d}"

    def _artifact_path(self, run_id: int, action_id: str) -> Path:
        return self._run_dir(run_id) / f"{action_id}.json"

    def _load_all(self) -> None:
        for run_dir in sorted(self.directory.glob("run-*")):
            run_id = int(run_dir.name.split('-', 1)[1])
            if (run_dir / _RETIRED_MARKER).exists():
                self._retired.add(run_id)
                continue
            for path in run_dir.glob("*.json"):
                self._read(path)

    def _read(self, path: Path) -> None:
        with open(path, 'r', encoding='utf-8') as f:
            document = json.load(f)

        encoding = document["encoding"]
        if encoding in _BINARY_ENCODINGS:
            data = base64.b64decode(document["data"])
        else:
            data = document["data"].encode('utf-8')

        ref = ArtifactRef.model_validate(document["ref"])
        key = (ref.run_id, ref.action_id)
        self._refs[key] = ref
        self._payloads[key] = (encoding, data)

    def _write(self, ref: ArtifactRef, encoding: str, data: bytes) -> None:
        if encoding in _BINARY_ENCODINGS:
            text = base64.b64encode(data).decode('ascii')
        else:
            text = data.decode('utf-8')

        path = self._artifact_path(ref.run_id, ref.action_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix('.json.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump({"ref": ref.model_dump(mode='json'), "encoding": encoding, "data": text}, f)
        tmp_path.replace(path)

    def _refresh(self, run_id: int, action_id: Optional[str] = None) -> None:
        """Pick up state another process wrote to the shared directory. Caller holds the lock."""
        if not self.directory or run_id in self._retired:
            return
        run_dir = self._run_dir(run_id)
        if (run_dir / _RETIRED_MARKER).exists():
            for key in [key for key in self._refs if key[0] == run_id]:
                del self._refs[key]
                del self._payloads[key]
            self._retired.add(run_id)
            return
        if action_id is not None and (run_id, action_id) not in self._refs:
            path = self._artifact_path(run_id, action_id)
            if path.exists():
                self._read(path)

    def put(self, run_id: int, producing_action_id: str, payload: Any,
            name: Optional[str] = None) -> ArtifactRef:
        """Write an artifact; each (run, action) pair may write exactly once."""
        key = (run_id, producing_action_id)
        encoding, data = encode_payload(payload)
        ref = ArtifactRef(
            run_id=run_id,
            action_id=producing_action_id,
            digest=_digest(data),
            name=name
        )

        with self._lock:
            self._refresh(run_id, producing_action_id)
            if run_id in self._retired:
                raise ArtifactExpiredError(f"Run {run_id} has been retired",
                                           {"run_id": run_id})
            if key in self._refs:
                raise DuplicateArtifactError(
                    f"Artifact already written for run {run_id} action {producing_action_id}",
                    context={"run_id": run_id, "action_id": producing_action_id}
                )

            if self.directory:
                self._write(ref, encoding, data)

            self._refs[key] = ref
            self._payloads[key] = (encoding, data)

        self.logger.debug(f"Stored {encoding} artifact {ref.name or producing_action_id} "
                          f"for run {run_id} ({ref.digest})")
        return ref

    def get(self, ref: ArtifactRef) -> Any:
        """Return a private copy of the payload written for ``ref``."""
        key = (ref.run_id, ref.action_id)

        with self._lock:
            self._refresh(ref.run_id, ref.action_id)
            if ref.run_id in self._retired:
                raise ArtifactExpiredError(f"Artifact {ref.action_id} of run {ref.run_id} has expired",
                                           {"run_id": ref.run_id, "action_id": ref.action_id})

            stored = self._refs.get(key)
            if stored is None or stored.digest != ref.digest:
                raise ArtifactNotFoundError(f"Unknown artifact {ref.action_id} for run {ref.run_id}",
                                            context={"run_id": ref.run_id, "action_id": ref.action_id})
            encoding, data = self._payloads[key]

        if _digest(data) != ref.digest:
            raise ArtifactIntegrityError(f"Artifact {ref.action_id} of run {ref.run_id} "
                                         f"does not match its digest")
        return decode_payload(encoding, data)

    def list_for_run(self, run_id: int) -> List[ArtifactRef]:
        with self._lock:
            return [ref for (owner, _), ref in self._refs.items() if owner == run_id]

    def is_retired(self, run_id: int) -> bool:
        with self._lock:
            self._refresh(run_id)
            return run_id in self._retired

    def retire_run(self, run_id: int) -> int:
        """Garbage-collect every artifact of a run. Returns how many were dropped."""
        with self._lock:
            keys = [key for key in self._refs if key[0] == run_id]
            for key in keys:
                del self._refs[key]
                del self._payloads[key]
            self._retired.add(run_id)

            if self.directory:
                run_dir = self._run_dir(run_id)
                shutil.rmtree(run_dir, ignore_errors=True)
                run_dir.mkdir(parents=True, exist_ok=True)
                (run_dir / _RETIRED_MARKER).touch()

        self.logger.info(f"Retired run {run_id}: dropped {len(keys)} artifacts")
        return len(keys)
