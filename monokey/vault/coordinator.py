"""
VaultCoordinator — binds a SessionKeyManager to the selected VaultStore.

``with_unlocked_key(fn)`` is the single point where vault work meets the
master key: when the session is unlocked ``fn(session_key)`` runs right away;
otherwise the action is queued, ``on_unlock_required`` is signalled, and the
queue is replayed in order after ``unlock`` or ``set_up`` succeeds.

The store is chosen explicitly with ``use_store``; nothing inspects a storage
flag at call time.
"""
import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, Optional, Union

from ..exceptions import (
    NotUnlockedError,
    SessionStateError,
    StoreNotActiveError,
    UnsavedChangesError,
    VerificationFailure,
)
from .key_rotation import rotate_master_key
from .local import LocalVaultStore
from .models import Credential, CredentialUpdate, ListResult, NewCredential
from .session import SessionKey, SessionKeyManager, SessionState
from .store import VaultStore

logger = logging.getLogger("monokey.vault")

KeyedAction = Callable[[SessionKey], Union[Awaitable[Any], Any]]


class VaultCoordinator:
    """Session-aware facade over the active store.

    Args:
        session: Master key state machine of the signed-in account.
        store: Initially selected store, if any.
        on_unlock_required: Called with the current SessionState whenever an
            action is queued; may be a coroutine function.
    """

    def __init__(
        self,
        session: SessionKeyManager,
        store: Optional[VaultStore] = None,
        on_unlock_required: Optional[Callable[[SessionState], Any]] = None,
    ):
        self.session = session
        self._store: Optional[VaultStore] = None
        self._pending: deque[tuple[KeyedAction, asyncio.Future]] = deque()
        self._on_unlock_required = on_unlock_required
        self._prompts: set[asyncio.Task] = set()
        if store is not None:
            self.use_store(store)

    def __repr__(self) -> str:
        return (
            f"<VaultCoordinator state={self.session.state.value} "
            f"store={self._store!r} pending={len(self._pending)}>"
        )

    # ------------------------------------------------------------------
    # Store selection
    # ------------------------------------------------------------------

    @property
    def store(self) -> Optional[VaultStore]:
        return self._store

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _leave_store(self, confirm: bool) -> None:
        current = self._store
        if isinstance(current, LocalVaultStore) and current.dirty and not confirm:
            raise UnsavedChangesError(
                "The local vault has unsaved changes; "
                "save it or confirm discarding them"
            )

    def use_store(self, store: VaultStore, confirm: bool = False) -> None:
        """Select the backend for subsequent operations.

        Raises:
            UnsavedChangesError: Leaving a dirty local store without confirm.
            SessionStateError: The store belongs to another account.
        """
        if store.account_id != self.session.account_id:
            raise SessionStateError("Store belongs to a different account")
        if store is not self._store:
            self._leave_store(confirm)
        self._store = store
        logger.info(
            "Using %s store for account=%s", store.kind, store.account_id,
        )

    def _require_store(self) -> VaultStore:
        if self._store is None:
            raise StoreNotActiveError("No vault store selected")
        return self._store

    def _require_local(self) -> LocalVaultStore:
        store = self._require_store()
        if not isinstance(store, LocalVaultStore):
            raise StoreNotActiveError("The selected store is not a local vault")
        return store

    # ------------------------------------------------------------------
    # Key gating
    # ------------------------------------------------------------------

    async def _run(self, fn: KeyedAction) -> Any:
        result = fn(self.session.session_key)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _prompt_done(self, task: asyncio.Task) -> None:
        self._prompts.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            logger.error("Unlock prompt failed: %s", err)

    def _signal_unlock_required(self) -> None:
        if self._on_unlock_required is None:
            return
        result = self._on_unlock_required(self.session.state)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._prompts.add(task)
            task.add_done_callback(self._prompt_done)

    def with_unlocked_key(self, fn: KeyedAction) -> asyncio.Future:
        """Run ``fn(session_key)`` now, or once the session is unlocked.

        Returns:
            Awaitable resolving to ``fn``'s result.

        Raises:
            Whatever a synchronous ``on_unlock_required`` raises; the action
            is not queued in that case.
        """
        loop = asyncio.get_running_loop()
        if self.session.is_unlocked:
            return loop.create_task(self._run(fn))
        # a prompt callback that raises leaves nothing queued
        self._signal_unlock_required()
        future = loop.create_future()
        self._pending.append((fn, future))
        logger.debug(
            "Queued vault action (%d pending), session is %s",
            len(self._pending), self.session.state.value,
        )
        return future

    async def _replay(self) -> None:
        while self._pending:
            fn, future = self._pending.popleft()
            if future.done():
                continue
            try:
                result = await self._run(fn)
            except Exception as err:
                future.set_exception(err)
            else:
                future.set_result(result)

    def _fail_pending(self, reason: str) -> None:
        while self._pending:
            _, future = self._pending.popleft()
            if not future.done():
                future.set_exception(NotUnlockedError(reason))

    # ------------------------------------------------------------------
    # Session transitions
    # ------------------------------------------------------------------

    async def set_up(self, secret: str) -> SessionState:
        await self.session.set_up(secret)
        await self._replay()
        return self.session.state

    async def unlock(self, candidate: str) -> SessionState:
        self.session.unlock(candidate)
        await self._replay()
        return self.session.state

    def lock(self) -> SessionState:
        """Wipe the in-memory key; queued actions keep waiting for unlock."""
        return self.session.lock()

    def cancel_pending(self) -> None:
        """Fail every queued action, e.g. when the unlock prompt is dismissed."""
        self._fail_pending("Unlock was cancelled")

    def sign_out(self, confirm: bool = False) -> SessionState:
        """Lock, drop queued actions and release the store.

        Raises:
            UnsavedChangesError: A dirty local store and no confirm.
        """
        self._leave_store(confirm)
        self._fail_pending("Signed out")
        if isinstance(self._store, LocalVaultStore) and self._store.is_active:
            self._store.discard(confirm=True)
        self._store = None
        return self.session.sign_out()

    # ------------------------------------------------------------------
    # Vault operations
    # ------------------------------------------------------------------

    async def list_credentials(self) -> ListResult:
        return await self.with_unlocked_key(
            lambda key: self._require_store().list(key)
        )

    async def add_credential(self, plain: NewCredential) -> Credential:
        return await self.with_unlocked_key(
            lambda key: self._require_store().create(plain, key)
        )

    async def update_credential(self, credential_id: str,
                                changes: CredentialUpdate) -> Credential:
        return await self.with_unlocked_key(
            lambda key: self._require_store().update(credential_id, changes, key)
        )

    async def remove_credential(self, credential_id: str) -> None:
        await self._require_store().delete(credential_id)

    async def open_local(self, data: bytes, **kwargs) -> ListResult:
        """Open a local bundle (ownership checked first), then list it."""
        self._require_local().open(data, **kwargs)
        return await self.list_credentials()

    async def export_local(self) -> bytes:
        store = self._require_local()
        return await self.with_unlocked_key(store.save)

    async def change_master_key(self, current: str, new: str) -> dict:
        """Re-encrypt the active store under a new master key, then swap it.

        If rotation or storing the new hash fails, the records are re-encrypted back under
        the current key before the error propagates, so the vault stays
        readable with the key the account still verifies against.

        Raises:
            NotUnlockedError: Session is not unlocked.
            VerificationFailure: ``current`` is wrong.
            ConfigurationError: ``new`` is too short.
        """
        old_key = self.session.session_key
        if not self.session.verify(current):
            raise VerificationFailure(
                self.session.failed_attempts, self.session.remaining_attempts,
            )
        self.session.check_strength(new)
        stats = {"total": 0, "rotated": 0, "errors": 0}
        new_key = SessionKey(self.session.account_id, new)
        try:
            store = self._store
            if isinstance(store, LocalVaultStore) and not store.is_active:
                store = None
            try:
                if store is not None:
                    stats = await rotate_master_key(store, old_key, new_key)
                await self.session.change_secret(current, new)
            except Exception:
                if store is not None:
                    logger.error(
                        "Master key change failed for account=%s; "
                        "restoring records under the current key",
                        self.session.account_id,
                    )
                    await rotate_master_key(store, new_key, old_key)
                raise
        finally:
            new_key.wipe()
        return stats
