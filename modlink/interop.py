"""Access across the two execution models.

The bridge is asymmetric:

- Deferred (async) requesters may load anything. Async-static targets are
  seen through per-name namespaces; eager-sync targets through an aggregate
  namespace whose only name is ``default``.
- Synchronous requesters can never wait. They see eager-sync targets as soon
  as they are linked (partial inside a cycle), but an async-static target
  only once something has already evaluated it through a deferred request.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from collections.abc import Callable

from .errors import InteropError
from .identifiers import ResourceIdentifier
from .manifests.schema import ModuleFormat
from .registry.records import ModuleRecord
from .registry.records import ModuleStatus
from .registry.records import Namespace
from .registry.registry import ModuleRegistry

logger = logging.getLogger(__name__)


class InteropBridge:
    def __init__(
        self,
        registry: ModuleRegistry,
        ensure_loaded: Callable[..., Awaitable[ModuleRecord]] | None = None,
    ):
        self.registry = registry
        self._ensure_loaded = ensure_loaded or registry.ensure_loaded

    @staticmethod
    def view(record: ModuleRecord) -> Namespace:
        """Namespace over a linked record's cells."""
        return Namespace(
            record.id,
            record.bindings,
            aggregate=record.format is ModuleFormat.EAGER_SYNC,
        )

    def access_from_sync(self, identifier: ResourceIdentifier) -> Namespace:
        """Namespace for a synchronous requester.

        Raises:
            InteropError: AsyncOnly for an async-static target that has not
                been evaluated; NotLoaded for a target that was never linked
            ModuleLinkError: The cached failure of the target
        """
        record = self.registry.get(identifier)
        if record is None:
            raise InteropError(
                f"Module {identifier.href} has not been loaded",
                kind="NotLoaded",
                specifier=identifier.href,
            )

        if record.status is ModuleStatus.FAILED:
            raise record.error

        if record.format is ModuleFormat.ASYNC_STATIC:
            if record.status is not ModuleStatus.EVALUATED:
                raise InteropError(
                    f"Module {identifier.href} is async-static and can only be required synchronously "
                    f"after it has been evaluated through a deferred import",
                    kind="AsyncOnly",
                    specifier=identifier.href,
                )
            return self.view(record)

        if not record.is_linked:
            raise InteropError(
                f"Module {identifier.href} is {record.status.value}, not linked",
                kind="NotLoaded",
                specifier=identifier.href,
            )
        return self.view(record)

    async def access_from_async(
        self,
        identifier: ResourceIdentifier,
        requester: ResourceIdentifier | None = None,
    ) -> Namespace:
        """Load (if needed) and return the namespace for a deferred requester."""
        record = await self._ensure_loaded(identifier, requester)
        logger.debug(f"[interop] async access to {identifier.href} ({record.format.value})")
        return self.view(record)
