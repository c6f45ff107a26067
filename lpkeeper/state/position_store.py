"""
PositionStore: durable, atomic record of everything the engine believes.

The full EngineState (positions, strategy config, rotation counters, control
switches, bounded transaction log) lives in one versioned JSON document.

Commit protocol:
    1. Apply the caller's pure transform to a private deep copy.
    2. Serialize to `engine_state.json.staging`, flush and fsync.
    3. Read the staging file back and deserialize it (validation).
    4. Copy the current primary to a recovery point `engine_state.json.rp.<seq>`.
    5. os.replace(staging, primary), the atomic swap.
    6. Prune recovery points and archive overflowing tx-log entries.

A crash before step 5 leaves the previous primary untouched. A crash between
4 and 5 leaves an extra recovery point, which is harmless.

Load order:
    primary -> newest valid recovery point -> trust-chain mode (empty state,
    rebuilt from on-chain discovery before autonomy resumes).

Thread Safety:
    Commits are serialized by an asyncio.Lock; callers never hold a lock
    themselves. File IO runs in the default executor.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional

from lpkeeper.core.errors import StateCommitError, StateCorruption
from lpkeeper.core.json_utils import dumps_bytes, loads as json_loads
from lpkeeper.core.models import EngineState
from lpkeeper.state.archive import TxArchive

log = logging.getLogger("lpkeeper")

StateTransform = Callable[[EngineState], Optional[EngineState]]


@dataclass
class PositionStoreConfig:
    """Configuration for PositionStore."""
    recovery_points: int = 5
    tx_log_max: int = 500
    history_max: int = 200
    fsync: bool = True

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


class PositionStore:
    """
    Single source of truth for engine state.

    Usage:
        store = PositionStore("state")
        await store.load()

        def pause(state):
            state.control.paused = True

        await store.commit(pause, reason="operator_pause")
        view = store.snapshot()
    """

    STATE_FILE = "engine_state.json"

    def __init__(
        self,
        state_dir: str,
        archive: Optional[TxArchive] = None,
        config: Optional[PositionStoreConfig] = None,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / self.STATE_FILE
        self.staging_path = self.state_dir / f"{self.STATE_FILE}.staging"
        self.archive = archive or TxArchive(state_dir)
        self.config = config or PositionStoreConfig()
        self._lock = asyncio.Lock()
        self._state = EngineState()
        self._loaded = False
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = kwargs.pop("level", logging.INFO)
        log.log(level, json.dumps({"event": event, **kwargs}))

    # ========== Load ==========

    async def load(self) -> EngineState:
        async with self._lock:
            loop = asyncio.get_running_loop()
            self._state = await loop.run_in_executor(None, self._load_sync)
            self._loaded = True
            return self._state.copy()

    def _load_sync(self) -> EngineState:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        if not self.path.exists() and not self._recovery_points():
            self._log_event("state_initialized", path=str(self.path))
            return EngineState(updated_ms=int(time.time() * 1000))

        try:
            state = self._read(self.path)
            self._log_event("state_loaded", seq=state.seq, positions=len(state.positions))
            return state
        except (StateCorruption, OSError) as exc:
            self._log_event("state_primary_invalid", level=logging.ERROR, err=str(exc))

        for rp in reversed(self._recovery_points()):
            try:
                state = self._read(rp)
            except (StateCorruption, OSError) as exc:
                self._log_event("state_recovery_point_invalid", level=logging.WARNING, path=rp.name, err=str(exc))
                continue
            self._log_event("state_recovered_from_recovery_point", level=logging.WARNING, path=rp.name, seq=state.seq)
            return state

        self._log_event("state_trust_chain_mode", level=logging.CRITICAL)
        state = EngineState(updated_ms=int(time.time() * 1000))
        state.control.trust_chain = True
        state.control.paused = False
        return state

    @staticmethod
    def _read(path: Path) -> EngineState:
        try:
            data = json_loads(path.read_bytes())
        except ValueError as exc:
            raise StateCorruption(f"{path.name}: {exc}") from exc
        return EngineState.from_dict(data)

    def _recovery_points(self) -> List[Path]:
        """Recovery point files, oldest first."""
        if not self.state_dir.exists():
            return []
        return sorted(self.state_dir.glob(f"{self.STATE_FILE}.rp.*"))

    # ========== Read ==========

    @property
    def loaded(self) -> bool:
        return self._loaded

    def snapshot(self) -> EngineState:
        """Deep copy of the current state; safe to inspect or mutate."""
        return self._state.copy()

    # ========== Commit ==========

    async def commit(self, transform: StateTransform, reason: str = "") -> EngineState:
        """
        Apply `transform` atomically and durably.

        The transform receives a private copy; it may mutate it and return None,
        or return a replacement state. If it raises, nothing is applied.

        Raises:
            StateCommitError: the new state could not be written (fatal)
        """
        async with self._lock:
            current = self._state
            draft = current.copy()
            result = transform(draft)
            new_state = draft if result is None else result
            new_state.seq = current.seq + 1
            new_state.updated_ms = int(time.time() * 1000)

            overflow = self._prune_in_memory(new_state)

            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._persist_sync, new_state, current.seq)
            self._state = new_state

            # only records pruned by a durable commit are archived
            if overflow:
                try:
                    await loop.run_in_executor(None, self.archive.write, overflow)
                except OSError as exc:
                    self._log_event("tx_log_archive_failed", level=logging.ERROR, err=str(exc),
                                    intent_ids=[r["intent_id"] for r in overflow])

            self._log_event("state_committed", seq=new_state.seq, reason=reason)
            return new_state.copy()

    def _prune_in_memory(self, state: EngineState) -> List[dict]:
        overflow: List[dict] = []
        excess = len(state.tx_log) - self.config.tx_log_max
        if excess > 0:
            overflow = [r.to_dict() for r in state.tx_log[:excess]]
            state.tx_log = state.tx_log[excess:]
        hist_excess = len(state.history) - self.config.history_max
        if hist_excess > 0:
            self._log_event("history_pruned", dropped=hist_excess)
            state.history = state.history[hist_excess:]
        return overflow

    def _persist_sync(self, state: EngineState, prior_seq: int) -> None:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            payload = dumps_bytes(state.to_dict(), indent=True)
            with self.staging_path.open("wb") as fh:
                fh.write(payload)
                fh.flush()
                if self.config.fsync:
                    os.fsync(fh.fileno())

            try:
                self._read(self.staging_path)
            except StateCorruption as exc:
                raise StateCommitError(f"staged state failed validation: {exc}") from exc

            if self.path.exists():
                shutil.copy2(self.path, self._rp_path(prior_seq))
            os.replace(self.staging_path, self.path)
            if self.config.fsync:
                self._fsync_dir()
        except OSError as exc:
            raise StateCommitError(f"state commit failed: {exc}") from exc

        self._prune_recovery_points()

    def _rp_path(self, seq: int) -> Path:
        return self.state_dir / f"{self.STATE_FILE}.rp.{seq:010d}"

    def _prune_recovery_points(self) -> None:
        points = self._recovery_points()
        for old in points[: max(0, len(points) - self.config.recovery_points)]:
            try:
                old.unlink()
            except OSError as exc:
                self._log_event("recovery_point_prune_failed", level=logging.WARNING, path=old.name, err=str(exc))

    def _fsync_dir(self) -> None:
        if os.name != "posix":
            return
        fd = os.open(str(self.state_dir), os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
