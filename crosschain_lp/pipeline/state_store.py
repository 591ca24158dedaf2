from __future__ import annotations

import asyncio
import json
import os
import tempfile
from collections.abc import Awaitable, Callable
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from crosschain_lp.core.errors import StateCorruptedError
from crosschain_lp.pipeline.types import ExecutionState, utcnow

_FILE_PREFIX = "orchestrator-"


class StateStore:
    """One JSON record per wallet under ``state_dir``.

    Writes go to a temp file in the same directory followed by ``os.replace``,
    so a crash mid-write leaves the previous record intact. Each wallet key has
    its own ``asyncio.Lock``; ``update`` holds it across read/modify/write.
    """

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)
        self._locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def _normalize_address(address: str) -> str:
        return str(address).strip().lower()

    def path_for(self, address: str) -> Path:
        return self.state_dir / f"{_FILE_PREFIX}{self._normalize_address(address)}.json"

    def _lock(self, address: str) -> asyncio.Lock:
        key = self._normalize_address(address)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _read(self, address: str) -> ExecutionState | None:
        path = self.path_for(address)
        if not path.exists():
            return None
        try:
            return ExecutionState.model_validate(json.loads(path.read_text()))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise StateCorruptedError(
                f"State record {path} is unreadable; inspect or reset it: {exc}"
            ) from exc

    def _write(self, state: ExecutionState) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(state.wallet_address)
        payload = state.model_dump_json(indent=2)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.state_dir, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def load(self, address: str) -> ExecutionState | None:
        async with self._lock(address):
            return self._read(address)

    async def load_or_create(
        self,
        address: str,
        *,
        derivation_index: int | None = None,
        dry_run: bool = False,
    ) -> ExecutionState:
        async with self._lock(address):
            state = self._read(address)
            if state is not None:
                return state
            state = ExecutionState(
                wallet_address=address,
                derivation_index=derivation_index,
                dry_run=dry_run,
            )
            self._write(state)
            logger.info(f"Created execution state for {address}")
            return state

    async def save(self, state: ExecutionState) -> ExecutionState:
        async with self._lock(state.wallet_address):
            state.updated_at = utcnow()
            self._write(state)
            return state

    async def update(
        self,
        address: str,
        mutate: Callable[[ExecutionState], Awaitable[None] | None],
    ) -> ExecutionState:
        async with self._lock(address):
            state = self._read(address)
            if state is None:
                state = ExecutionState(wallet_address=address)
            result = mutate(state)
            if asyncio.iscoroutine(result):
                await result
            state.updated_at = utcnow()
            self._write(state)
            return state

    async def reset(self, address: str) -> bool:
        async with self._lock(address):
            path = self.path_for(address)
            if not path.exists():
                return False
            path.unlink()
            logger.info(f"Reset execution state for {address}")
            return True

    def list_states(self) -> list[ExecutionState]:
        if not self.state_dir.exists():
            return []
        states: list[ExecutionState] = []
        for path in sorted(self.state_dir.glob(f"{_FILE_PREFIX}*.json")):
            address = path.stem[len(_FILE_PREFIX) :]
            try:
                state = self._read(address)
            except StateCorruptedError as exc:
                logger.warning(str(exc))
                continue
            if state is not None:
                states.append(state)
        return states
