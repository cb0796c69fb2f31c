"""Sync client: keeps a local SharedState in step with the shared state store.

Lifecycle is ``IDLE -> LOADING -> READY``. While a remote document is being
applied the client is additionally in the *applying remote* sub-state, which
suppresses the outbound push that a local change would trigger, so a
server echo never bounces back to the server.

Versioning is a single scalar: ``last_server_updated_at`` is the
``updatedAt`` of the last document known to be on the server. The local
state is dirty when its own ``updated_at`` differs from that value.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import replace
from enum import Enum
from typing import Any, Callable, Optional

from . import timer
from .api import ApiError, ApiErrorCode, ConflictError, PushChannel, StateApi
from .cache import LocalCache
from .config import DEFAULT_PUSH_TIMEOUT
from .model import DEFAULT_STATE, SharedState, now_ms
from .normalize import normalize_shared_state
from .reducer import Init, ResetAll, reduce

logger = logging.getLogger("sleep_tasks.sync")

TICK_INTERVAL_S = 0.25


class SyncPhase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"


class SaveStatus(str, Enum):
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"
    CONFLICT = "conflict"


class PushPolicy(str, Enum):
    AUTO = "auto"      # push every dirty change immediately
    MANUAL = "manual"  # caller commits with save()


class SyncClient:
    """Reducer host plus sync protocol for one client."""

    def __init__(
        self,
        api: StateApi,
        cache: LocalCache,
        policy: PushPolicy = PushPolicy.MANUAL,
        clock: Callable[[], int] = now_ms,
        push_timeout: float = DEFAULT_PUSH_TIMEOUT,
    ):
        self.api = api
        self.cache = cache
        self.policy = policy
        self.clock = clock
        self.push_timeout = push_timeout

        self.state: SharedState = DEFAULT_STATE
        self.phase = SyncPhase.IDLE
        self.last_server_updated_at = 0
        self.loaded_from: Optional[str] = None  # "server" | "cache" | "default"

        self.save_status = SaveStatus.IDLE
        self.save_error = ""
        self.last_saved_at: Optional[int] = None

        self._applying_remote = False
        self._push_task: Optional[asyncio.Task] = None
        self._listeners: list[Callable[[SharedState], None]] = []

    # ---- Read-only properties ----

    @property
    def ready(self) -> bool:
        return self.phase == SyncPhase.READY

    @property
    def applying_remote(self) -> bool:
        return self._applying_remote

    @property
    def saving(self) -> bool:
        return self.save_status == SaveStatus.SAVING

    @property
    def is_dirty(self) -> bool:
        if not self.ready:
            return False
        stamp = self.state.updated_at
        if isinstance(stamp, bool) or not isinstance(stamp, int) or stamp <= 0:
            return False
        return stamp != self.last_server_updated_at

    def on_change(self, listener: Callable[[SharedState], None]) -> None:
        """Register a callback invoked with every new state (render hook)."""
        self._listeners.append(listener)

    # ---- Local changes ----

    def dispatch(self, action: Any) -> SharedState:
        """Run the reducer, write the result through to the cache, maybe push."""
        next_state = reduce(self.state, action, self.clock)
        if next_state is self.state:
            return self.state

        self._commit(next_state)
        if not self._applying_remote:
            self._schedule_push()
        return self.state

    def _commit(self, next_state: SharedState) -> None:
        self.state = next_state
        self.cache.save(next_state)
        for listener in self._listeners:
            listener(next_state)

    def hard_reset(self) -> SharedState:
        """Forget the cached copy and start from an empty document."""
        self.cache.clear()
        return self.dispatch(ResetAll())

    def live_elapsed(self, task_id: str, at_ms: Optional[int] = None) -> int:
        task = self.state.get(task_id)
        if task is None:
            return 0
        return timer.live_elapsed(task, self.clock() if at_ms is None else at_ms)

    # ---- Remote documents ----

    @contextmanager
    def _remote_apply(self):
        self._applying_remote = True
        try:
            yield
        finally:
            self._applying_remote = False

    def apply_remote(self, payload: Any) -> SharedState:
        """Adopt a document from the store (initial load, push message or conflict)."""
        normalized = normalize_shared_state(payload, self.clock())
        with self._remote_apply():
            self.last_server_updated_at = normalized.updated_at
            self.dispatch(Init(normalized))
        logger.debug(f"Applied remote document v{normalized.updated_at} ({len(normalized.tasks)} tasks)")
        return self.state

    async def _call(self, fn: Callable, *args):
        """Run a blocking API call off the event loop with the push timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, fn, *args), timeout=self.push_timeout)
        except asyncio.TimeoutError as e:
            raise ApiError(f"request timed out after {self.push_timeout}s", ApiErrorCode.TIMEOUT) from e

    async def load(self) -> SharedState:
        """Initial load: server first, local cache as the disconnected fallback."""
        self.phase = SyncPhase.LOADING
        try:
            remote = await self._call(self.api.load)
            self.apply_remote(remote)
            self.loaded_from = "server"
            logger.info(f"Loaded shared state v{self.state.updated_at} from server")
        except ApiError as e:
            logger.warning(f"Initial load failed ({e.code.value}): {e}; using local cache")
            cached = self.cache.load()
            if cached is not None:
                self.apply_remote(cached)
                self.loaded_from = "cache"
            else:
                self.loaded_from = "default"
        self.phase = SyncPhase.READY
        return self.state

    async def run(self, channel: PushChannel) -> None:
        """Load, then apply push messages in receipt order until cancelled."""
        await self.load()
        await channel.listen(self.apply_remote)

    async def tick(self, on_tick: Callable[[int], None], interval: float = TICK_INTERVAL_S) -> None:
        """Periodic display refresh. Never touches the stored state."""
        while True:
            on_tick(self.clock())
            await asyncio.sleep(interval)

    # ---- Outbound push ----

    def _schedule_push(self) -> None:
        if self.policy != PushPolicy.AUTO or not self.is_dirty or self.saving:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, change stays dirty until save()")
            return
        self._push_task = loop.create_task(self.save())

    def _rollback(self, previous: int, optimistic: int) -> None:
        # Only undo our own optimistic bump; a push message adopted while the
        # write was in flight has already set the right version.
        if self.last_server_updated_at == optimistic:
            self.last_server_updated_at = previous

    def _keep_local_edits(self, persisted_at: int) -> None:
        """Newer local edits (or a newer push message) arrived during a save.

        The server version moves forward. Unpushed edits are re-stamped above
        it so the next push is not rejected as stale.
        """
        has_edits = self.state.updated_at != self.last_server_updated_at
        self.last_server_updated_at = max(self.last_server_updated_at, persisted_at)
        if has_edits and self.state.updated_at <= self.last_server_updated_at:
            self._commit(replace(self.state, updated_at=self.last_server_updated_at + 1))

    async def save(self) -> bool:
        """Push the current state to the store. Returns True when accepted.

        At most one push is in flight. Failures leave the change in the local
        state and cache, flagged dirty for a later retry; a conflict adopts
        the store's current document instead.
        """
        if not self.ready or self.saving or not self.is_dirty:
            return False

        snapshot = self.state
        previous = self.last_server_updated_at
        # Optimistic: an echo of this very write must not look like a foreign change
        self.last_server_updated_at = snapshot.updated_at
        self.save_status = SaveStatus.SAVING
        self.save_error = ""

        try:
            persisted = await self._call(self.api.save, snapshot.to_dict())
            if persisted is None:
                persisted = await self._call(self.api.load)
        except ConflictError as e:
            logger.warning(
                f"Save of v{snapshot.updated_at} rejected as stale, "
                f"adopting server v{e.current_state.get('updatedAt')}"
            )
            self.apply_remote(e.current_state)
            self.save_status = SaveStatus.CONFLICT
            self.save_error = str(e)
            return False
        except ApiError as e:
            logger.warning(f"Save of v{snapshot.updated_at} failed ({e.code.value}): {e}")
            self._rollback(previous, snapshot.updated_at)
            self.save_status = SaveStatus.ERROR
            self.save_error = str(e)
            return False
        except Exception as e:
            logger.exception(f"Save of v{snapshot.updated_at} failed unexpectedly")
            self._rollback(previous, snapshot.updated_at)
            self.save_status = SaveStatus.ERROR
            self.save_error = f"{type(e).__name__}: {e}"
            return False

        normalized = normalize_shared_state(persisted, self.clock())
        if self.state is snapshot:
            self.apply_remote(normalized)
        else:
            self._keep_local_edits(normalized.updated_at)

        self.last_saved_at = self.clock()
        self.save_status = SaveStatus.SAVED
        logger.info(f"Saved shared state, server v{normalized.updated_at}")

        self._schedule_push()
        return True
