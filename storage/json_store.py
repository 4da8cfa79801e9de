"""
Storage - JSON Session Store.

============================================================
PURPOSE
============================================================
File-backed SessionStore: one JSON document per session in
`session_dir`, named `{session_ref}_session.json`.

Only the newest `max_generations` worker generations are kept;
stranded workers live in the header and are never pruned.

WRITE PROTOCOL:
1. Serialize the full document
2. Write to a temporary file and replace the target
3. Read the target back and compare
4. On any failure retry, up to `write_retries` attempts
   spaced by `write_retry_delay_seconds`
5. Raise CheckpointError(CHK_WRITE_FAILED) when all fail

============================================================
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from lap_engine.adapters.base import SessionStore, merge_generation
from lap_engine.config import StorageConfig
from lap_engine.errors import CheckpointError
from lap_engine.types import SessionCheckpoint, WorkerIdentity

from .documents import checkpoint_from_document, header_to_document, identity_to_record


logger = logging.getLogger(__name__)

SUFFIX = "_session.json"


class JsonSessionStore(SessionStore):
    """Session store writing verified JSON files."""

    def __init__(self, config: StorageConfig):
        self._dir = Path(config.session_dir)
        self._retries = max(1, config.write_retries)
        self._delay = config.write_retry_delay_seconds
        self._keep = config.max_generations
        self._lock = asyncio.Lock()

    @property
    def session_dir(self) -> Path:
        return self._dir

    def path_for(self, session_ref: str) -> Path:
        return self._dir / f"{session_ref}{SUFFIX}"

    # --------------------------------------------------------
    # SESSION STORE
    # --------------------------------------------------------

    async def load(self, session_ref: str) -> SessionCheckpoint:
        document = self._read(session_ref)
        if document is None:
            raise CheckpointError(f"Session {session_ref} not found", code="CHK_MISSING")
        return checkpoint_from_document(document)

    async def save(self, checkpoint: SessionCheckpoint) -> None:
        async with self._lock:
            existing = self._read(checkpoint.session_ref) or {}
            document = header_to_document(checkpoint)
            document["generations"] = merge_generation(
                existing.get("generations", []),
                [identity_to_record(w) for w in checkpoint.workers],
                lambda r: r["address"],
                keep=self._keep,
            )
            await self._write(checkpoint.session_ref, document)

    async def append_workers(self, pool: Sequence[WorkerIdentity], session_ref: str) -> None:
        async with self._lock:
            document = self._read(session_ref)
            if document is None:
                raise CheckpointError(f"Session {session_ref} not found", code="CHK_MISSING")
            document["generations"] = merge_generation(
                document.get("generations", []),
                [identity_to_record(w) for w in pool],
                lambda r: r["address"],
                keep=self._keep,
            )
            await self._write(session_ref, document)
            logger.info(f"Appended {len(pool)} workers to session {session_ref}")

    async def delete(self, session_ref: str) -> None:
        path = self.path_for(session_ref)
        if path.exists():
            path.unlink()
            logger.info(f"Deleted session file {path.name}")

    async def list_sessions(self) -> List[str]:
        if not self._dir.exists():
            return []
        return sorted(p.name[: -len(SUFFIX)] for p in self._dir.glob(f"*{SUFFIX}"))

    def generations(self, session_ref: str) -> List[List[Dict[str, Any]]]:
        """Raw worker generations of a session, oldest first."""
        document = self._read(session_ref) or {}
        return document.get("generations", [])

    # --------------------------------------------------------
    # FILE I/O
    # --------------------------------------------------------

    def _read(self, session_ref: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(session_ref)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise CheckpointError(
                f"Session file {path.name} is unreadable: {e}",
                code="CHK_MISSING",
            ) from e

    async def _write(self, session_ref: str, document: Dict[str, Any]) -> None:
        path = self.path_for(session_ref)
        tmp_path = path.with_suffix(".json.tmp")
        last_error: Optional[Exception] = None

        for attempt in range(1, self._retries + 1):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2)
                os.replace(tmp_path, path)

                with open(path, "r", encoding="utf-8") as f:
                    saved = json.load(f)
                if saved != document:
                    raise ValueError("Session verification failed")
                return
            except (OSError, ValueError) as e:
                last_error = e
                logger.warning(
                    f"Failed to save session {session_ref} (attempt {attempt}/{self._retries}): {e}"
                )
                if attempt < self._retries and self._delay > 0:
                    await asyncio.sleep(self._delay)

        raise CheckpointError(
            f"Failed to save session {session_ref} after {self._retries} attempts: {last_error}",
            code="CHK_WRITE_FAILED",
        )
