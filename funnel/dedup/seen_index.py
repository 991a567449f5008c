"""
Seen Index: per-learner, per-module fingerprint sets.

The local SQLite cache answers every lookup. When a remote store is
configured, sets are reconciled by union:

    remote -> local   (everything the learner saw on other devices)
    local - remote -> remote   (only the delta is written)

Remote failures never lose data: rows stay flagged unsynced in the local
cache and are retried on the next reconciliation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Protocol

from loguru import logger

from funnel.core.errors import RemoteStoreError
from funnel.core.models import Question
from funnel.dedup.fingerprint import fingerprint_variants, has_seen
from funnel.store.local_store import LocalStore, SeenRow


class RemoteSeenStore(Protocol):
    """Authoritative seen-set storage shared across devices."""

    async def fetch(self, learner_id: str, module_id: str) -> set[str]: ...

    async def add(self, learner_id: str, module_id: str, rows: list[SeenRow]) -> None: ...


class SeenIndex:
    """Seen-question lookups and merge-then-write reconciliation for one learner."""

    def __init__(
        self,
        learner_id: str,
        local: LocalStore,
        remote: RemoteSeenStore | None = None,
    ):
        self.learner_id = learner_id
        self.local = local
        self.remote = remote
        self._cache: dict[str, set[str]] = {}
        self._background: set[asyncio.Task] = set()

    async def load(self, module_id: str) -> frozenset[str]:
        """
        Load the seen set for a module.

        Remote rows are merged into the local cache as synced. If the remote
        store is unreachable the local cache is used alone.
        """
        if self.remote is not None:
            try:
                remote = await self.remote.fetch(self.learner_id, module_id)
                added = self.local.add_seen(
                    self.learner_id,
                    module_id,
                    (SeenRow(fingerprint=fp) for fp in remote),
                    synced=True,
                )
                if added:
                    logger.debug(f"Merged {added} remote fingerprints into {module_id}")
            except RemoteStoreError as e:
                logger.warning(f"Seen store unavailable, using local cache for {module_id}: {e}")

        seen = self.local.get_seen(self.learner_id, module_id)
        self._cache[module_id] = seen
        return frozenset(seen)

    def seen(self, module_id: str) -> frozenset[str]:
        """Cached seen set (empty until load() has run for the module)."""
        return frozenset(self._cache.get(module_id, ()))

    def has_seen(self, question: Question, module_id: str) -> bool:
        return has_seen(question, self._cache.get(module_id, set()))

    async def mark_seen(
        self,
        questions: Iterable[Question],
        module_id: str,
        wait: bool = True,
    ) -> int:
        """
        Record delivered questions as seen.

        Every fingerprint variant is stored, so later lookups match on either
        form. Idempotent: marking the same questions again adds nothing.

        Args:
            questions: Questions shown to the learner
            module_id: Seen-set key
            wait: When False, remote reconciliation runs in the background

        Returns:
            Number of new fingerprints in the local cache
        """
        rows = [
            SeenRow(fingerprint=fp, question_id=q.id, source_type=q.source_type.value)
            for q in questions
            for fp in sorted(fingerprint_variants(q))
        ]
        added = self.local.add_seen(self.learner_id, module_id, rows)
        self._cache.setdefault(module_id, set()).update(r.fingerprint for r in rows)

        if self.remote is None:
            return added

        if wait:
            await self.reconcile(module_id)
        else:
            task = asyncio.create_task(self.reconcile(module_id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return added

    async def reconcile(self, module_id: str) -> bool:
        """
        Union local and remote sets for a module.

        Returns:
            True when the remote store holds everything the local cache does
        """
        if self.remote is None:
            return False

        try:
            remote = await self.remote.fetch(self.learner_id, module_id)
        except RemoteStoreError as e:
            logger.warning(f"Seen sync deferred for {module_id}: {e}")
            return False

        self.local.add_seen(
            self.learner_id,
            module_id,
            (SeenRow(fingerprint=fp) for fp in remote),
            synced=True,
        )

        pending = self.local.get_unsynced(self.learner_id, module_id)
        already_remote = [r.fingerprint for r in pending if r.fingerprint in remote]
        delta = [r for r in pending if r.fingerprint not in remote]

        if already_remote:
            self.local.mark_synced(self.learner_id, module_id, already_remote)

        if delta:
            try:
                await self.remote.add(self.learner_id, module_id, delta)
            except RemoteStoreError as e:
                logger.warning(f"Seen sync deferred for {module_id} ({len(delta)} pending): {e}")
                return False
            self.local.mark_synced(self.learner_id, module_id, [r.fingerprint for r in delta])
            logger.debug(f"Wrote {len(delta)} seen fingerprints for {module_id}")

        self._cache[module_id] = self.local.get_seen(self.learner_id, module_id)
        return True

    async def reconcile_pending(self) -> dict[str, bool]:
        """Retry reconciliation for every module with unsynced rows."""
        results = {}
        for module_id in self.local.pending_modules(self.learner_id):
            results[module_id] = await self.reconcile(module_id)
        return results

    async def drain(self) -> None:
        """Wait for background reconciliations started by mark_seen(wait=False)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
