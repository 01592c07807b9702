"""Module registry: single-flight loading and cycle-aware linking.

Every canonical identifier maps to exactly one ModuleRecord. The first
``ensure_loaded`` call for a Pending record starts one asyncio task that
drives the record through its lifecycle; every other caller joins that task.

Cycles are detected with a wait-for map: while a record links its
dependencies, ``_waiting[record] = dependency`` names what it is blocked on.
A request whose target (transitively) waits on the requester would deadlock,
so the requester receives the target's partial record instead.

Cancellation is interest-counted: the load task is cancelled only when its
last waiter goes away, and a cancelled load returns the record to Pending.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Mapping
from typing import Any
from typing import Protocol

from ..errors import EvaluationError
from ..errors import ModuleLinkError
from ..identifiers import ResourceIdentifier
from ..manifests.schema import ModuleFormat
from .records import BindingCell
from .records import ModuleRecord
from .records import ModuleStatus

logger = logging.getLogger(__name__)


class ModuleLoader(Protocol):
    """What the registry needs from its owner to drive a record."""

    def format_for(self, identifier: ResourceIdentifier) -> ModuleFormat:
        """Expected execution model of a not-yet-loaded resource."""
        ...

    async def fetch(self, record: ModuleRecord) -> None:
        """Load, transform and analyze; fill source, exports and dependencies."""
        ...

    async def evaluate(self, record: ModuleRecord) -> None:
        """Run the body and assign the record's exported cells."""
        ...


class ModuleRegistry:
    """Owns all module records of one engine."""

    def __init__(self, loader: ModuleLoader):
        self._loader = loader
        self._records: dict[ResourceIdentifier, ModuleRecord] = {}
        self._waiting: dict[ResourceIdentifier, ResourceIdentifier] = {}

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, identifier: ResourceIdentifier) -> ModuleRecord | None:
        return self._records.get(identifier)

    def records(self) -> list[ModuleRecord]:
        return [self._records[key] for key in sorted(self._records)]

    def record_for(self, identifier: ResourceIdentifier, format: ModuleFormat | None = None) -> ModuleRecord:
        """Get the record for ``identifier``, creating a Pending one if needed."""
        record = self._records.get(identifier)
        if record is None:
            record = ModuleRecord(id=identifier, format=format or self._loader.format_for(identifier))
            self._records[identifier] = record
            logger.debug(f"[registry] new record {identifier.href} ({record.format.value})")
        return record

    def define_synthetic(self, identifier: ResourceIdentifier, exports: Mapping[str, Any]) -> ModuleRecord:
        """Register a host-defined, already evaluated async-static module."""
        existing = self._records.get(identifier)
        if existing is not None and existing.in_flight:
            raise RuntimeError(f"Cannot redefine {identifier.href} while it is loading")

        record = ModuleRecord(
            id=identifier,
            format=ModuleFormat.ASYNC_STATIC,
            status=ModuleStatus.EVALUATED,
            exported_names=tuple(exports),
            bindings={name: BindingCell(name, value) for name, value in exports.items()},
            synthetic=True,
        )
        if existing is not None:
            record.dependents = existing.dependents
        self._records[identifier] = record
        logger.debug(f"[registry] defined synthetic {identifier.href}: {', '.join(exports)}")
        return record

    # ----- Loading -----

    async def ensure_loaded(
        self,
        identifier: ResourceIdentifier,
        requester: ResourceIdentifier | None = None,
    ) -> ModuleRecord:
        """Drive ``identifier`` to Evaluated (or partial, inside a cycle).

        Args:
            identifier: Canonical identifier
            requester: Record that is linking this one as a dependency

        Returns:
            The record; Evaluated, or Evaluating when returned to break a cycle

        Raises:
            ModuleLinkError: The cached failure of the record
        """
        while True:
            record = self.record_for(identifier)

            if record.status is ModuleStatus.EVALUATED:
                return record
            if record.status is ModuleStatus.FAILED:
                raise record.error

            if record.in_flight and record.cancel_requested:
                # Let the abandoned load settle back to Pending, then start over
                await asyncio.wait({record.task})
                continue

            if record.status is ModuleStatus.PENDING:
                record.status = ModuleStatus.LOADING
                record.task = asyncio.create_task(self._run(record), name=f"modlink-load:{identifier.href}")
            elif self._closes_cycle(identifier, requester):
                logger.debug(f"[registry] cycle: {requester.href} receives partial {identifier.href}")
                return record

            return await self._join(record, requester)

    async def _join(self, record: ModuleRecord, requester: ResourceIdentifier | None) -> ModuleRecord:
        task = record.task
        record.interest += 1
        if requester is not None:
            self._waiting[requester] = record.id
        released = False
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            record.interest -= 1
            released = True
            if record.interest == 0 and not task.done():
                logger.debug(f"[registry] last waiter for {record.id.href} cancelled, cancelling load")
                record.cancel_requested = True
                task.cancel()
            raise
        finally:
            if not released:
                record.interest -= 1
            if requester is not None and self._waiting.get(requester) == record.id:
                del self._waiting[requester]

        if record.status is ModuleStatus.FAILED:
            raise record.error
        return record

    def _closes_cycle(self, target: ResourceIdentifier, requester: ResourceIdentifier | None) -> bool:
        if requester is None:
            return False
        node: ResourceIdentifier | None = target
        seen: set[ResourceIdentifier] = set()
        while node is not None and node not in seen:
            if node == requester:
                return True
            seen.add(node)
            node = self._waiting.get(node)
        return False

    async def _run(self, record: ModuleRecord) -> None:
        href = record.id.href
        try:
            await self._loader.fetch(record)
            record.instantiate()
            record.status = ModuleStatus.EVALUATING
            await self._link_dependencies(record)
            await self._loader.evaluate(record)
            record.status = ModuleStatus.EVALUATED
            record.evaluations += 1
            logger.debug(f"[registry] evaluated {href}")
        except asyncio.CancelledError:
            logger.debug(f"[registry] load of {href} cancelled, back to pending")
            record.reset()
            raise
        except ModuleLinkError as err:
            self._fail(record, err)
        except Exception as e:
            err = EvaluationError(
                f"Module {href} failed: {type(e).__name__}: {e}",
                kind="BodyFailed",
                specifier=href,
            )
            err.__cause__ = e
            self._fail(record, err)
        finally:
            record.task = None

    async def _link_dependencies(self, record: ModuleRecord) -> None:
        for dependency in record.dependencies:
            self.record_for(dependency).dependents.add(record.id)
            if dependency in record.deferred:
                continue
            try:
                await self.ensure_loaded(dependency, requester=record.id)
            except ModuleLinkError as err:
                raise err.with_importer(record.id.href) from err.__cause__

    def _fail(self, record: ModuleRecord, err: ModuleLinkError) -> None:
        record.status = ModuleStatus.FAILED
        record.error = err
        logger.debug(f"[registry] {record.id.href} failed: {err.kind}: {err.message}")

    # ----- Invalidation / teardown -----

    def invalidate(self, identifier: ResourceIdentifier) -> list[ResourceIdentifier]:
        """Reset ``identifier`` and its transitive dependents to Pending.

        Returns:
            Identifiers that were reset, the invalidated record first

        Raises:
            RuntimeError: If any affected record is currently loading
        """
        if identifier not in self._records:
            return []

        affected: list[ModuleRecord] = []
        seen: set[ResourceIdentifier] = set()
        queue = deque([identifier])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            record = self._records.get(current)
            if record is None:
                continue
            affected.append(record)
            queue.extend(sorted(record.dependents))

        busy = [r.id.href for r in affected if r.in_flight]
        if busy:
            raise RuntimeError(f"Cannot invalidate while loading: {', '.join(busy)}")

        reset = []
        for record in affected:
            if record.synthetic:
                continue
            record.reset()
            reset.append(record.id)
        logger.debug(f"[registry] invalidated {len(reset)} record(s) from {identifier.href}")
        return reset

    def clear(self) -> None:
        """Cancel in-flight loads and drop every record."""
        for record in self._records.values():
            if record.task is not None and not record.task.done():
                record.task.cancel()
        self._records.clear()
        self._waiting.clear()
