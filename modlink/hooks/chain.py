"""Ordered, short-circuiting hook chain.

Each participating hook receives the request and a continuation ("the next
hook, or the builtin when none is left"). A hook returns:
- ShortCircuit(result): final; later hooks and the builtin never run
- Delegate(): continue unchanged
- Delegate(new_request): continue with a rewritten request

A hook that raises aborts the whole chain with a HookError naming the hook
and stage. Engine errors raised further down the chain (by later hooks or
the builtin) propagate unchanged.

The chain is fixed at construction; there is no re-registration while a
resolution is in flight.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Iterable
from typing import Any

from ..errors import HookError
from ..errors import ModuleLinkError
from ..identifiers import ResourceIdentifier
from .models import Delegate
from .models import HookDescriptor
from .models import HookStage
from .models import LoadedSource
from .models import LoadRequest
from .models import ResolveRequest
from .models import ShortCircuit
from .models import TransformRequest

logger = logging.getLogger(__name__)


class HookChain:
    """Runs resolve/load/transform requests through registered hooks."""

    def __init__(self, descriptors: Iterable[HookDescriptor] = ()):
        indexed = list(enumerate(descriptors))
        names = [d.name for _, d in indexed]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate hook names: {', '.join(duplicates)}")

        # Priority first, registration order breaks ties
        ordered = sorted(indexed, key=lambda pair: (pair[1].priority, pair[0]))
        self._hooks: tuple[HookDescriptor, ...] = tuple(d for _, d in ordered)
        self._by_stage = {stage: [h for h in self._hooks if h.handles(stage)] for stage in HookStage}

        for hook in self._hooks:
            logger.debug(
                f"[hooks] registered '{hook.name}' for {sorted(s.value for s in hook.capabilities)} "
                f"with priority {hook.priority}"
            )

    @property
    def hooks(self) -> tuple[HookDescriptor, ...]:
        return self._hooks

    def hooks_for(self, stage: HookStage) -> list[HookDescriptor]:
        return list(self._by_stage[stage])

    def list_hooks(self) -> dict[str, list[str]]:
        """Hook names per stage, in chain order."""
        return {stage.value: [h.name for h in hooks] for stage, hooks in self._by_stage.items()}

    # ----- Resolve (synchronous) -----

    def run_resolve(
        self,
        request: ResolveRequest,
        builtin_resolve: Callable[[ResolveRequest], ResourceIdentifier],
    ) -> ResourceIdentifier:
        """Resolve through the chain, ending at ``builtin_resolve``."""
        return self._dispatch_resolve(self._by_stage[HookStage.RESOLVE], 0, request, builtin_resolve)

    def _dispatch_resolve(self, hooks, index, request, builtin):
        index = self._next_participant(hooks, index, HookStage.RESOLVE, request)
        if index is None:
            return builtin(request)

        hook = hooks[index]

        def next_resolve(rewritten: ResolveRequest | None = None) -> ResourceIdentifier:
            return self._dispatch_resolve(hooks, index + 1, rewritten or request, builtin)

        try:
            outcome = hook.handlers[HookStage.RESOLVE](request, next_resolve)
        except ModuleLinkError:
            raise
        except Exception as e:
            raise self._failure(hook, HookStage.RESOLVE, request, f"raised {type(e).__name__}: {e}") from e

        if inspect.isawaitable(outcome):
            if inspect.iscoroutine(outcome):
                outcome.close()
            raise self._failure(hook, HookStage.RESOLVE, request, "returned an awaitable; resolve must not suspend")

        if isinstance(outcome, ShortCircuit):
            if not isinstance(outcome.result, ResourceIdentifier):
                raise self._failure(
                    hook, HookStage.RESOLVE, request, f"short-circuited with {type(outcome.result).__name__}"
                )
            logger.debug(f"[hooks] '{hook.name}' short-circuited resolve of {request.specifier}")
            return outcome.result
        if isinstance(outcome, Delegate):
            if outcome.request is not None and not isinstance(outcome.request, ResolveRequest):
                raise self._failure(hook, HookStage.RESOLVE, request, "delegated with an invalid request")
            return next_resolve(outcome.request)
        raise self._failure(hook, HookStage.RESOLVE, request, f"returned invalid outcome {type(outcome).__name__}")

    # ----- Load / transform (may suspend) -----

    async def run_load(
        self,
        request: LoadRequest,
        builtin_load: Callable[[LoadRequest], Awaitable[LoadedSource]],
    ) -> LoadedSource:
        """Load raw source through the chain, ending at ``builtin_load``."""
        return await self._dispatch_async(HookStage.LOAD, self._by_stage[HookStage.LOAD], 0, request, builtin_load)

    async def run_transform(
        self,
        request: TransformRequest,
        builtin_transform: Callable[[TransformRequest], Awaitable[LoadedSource]],
    ) -> LoadedSource:
        """Transform source through the chain, ending at ``builtin_transform``."""
        return await self._dispatch_async(
            HookStage.TRANSFORM, self._by_stage[HookStage.TRANSFORM], 0, request, builtin_transform
        )

    async def _dispatch_async(self, stage, hooks, index, request, builtin) -> LoadedSource:
        index = self._next_participant(hooks, index, stage, request)
        if index is None:
            return await builtin(request)

        hook = hooks[index]
        request_type = type(request)

        async def next_stage(rewritten: Any = None) -> LoadedSource:
            return await self._dispatch_async(stage, hooks, index + 1, rewritten or request, builtin)

        try:
            outcome = hook.handlers[stage](request, next_stage)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except ModuleLinkError:
            raise
        except Exception as e:
            raise self._failure(hook, stage, request, f"raised {type(e).__name__}: {e}") from e

        if isinstance(outcome, ShortCircuit):
            result = outcome.result
            if isinstance(result, str | bytes):
                result = LoadedSource(result)
            if not isinstance(result, LoadedSource):
                raise self._failure(hook, stage, request, f"short-circuited with {type(result).__name__}")
            logger.debug(f"[hooks] '{hook.name}' short-circuited {stage.value} of {request.subject}")
            return result
        if isinstance(outcome, Delegate):
            if outcome.request is not None and not isinstance(outcome.request, request_type):
                raise self._failure(hook, stage, request, "delegated with an invalid request")
            return await next_stage(outcome.request)
        raise self._failure(hook, stage, request, f"returned invalid outcome {type(outcome).__name__}")

    # ----- Helpers -----

    def _next_participant(self, hooks, index, stage, request) -> int | None:
        while index < len(hooks):
            hook = hooks[index]
            try:
                accepted = hook.matcher.matches(stage, request) and (
                    hook.predicate is None or hook.predicate(request)
                )
            except Exception as e:
                raise self._failure(hook, stage, request, f"predicate raised {type(e).__name__}: {e}") from e
            if accepted:
                return index
            index += 1
        return None

    @staticmethod
    def _failure(hook: HookDescriptor, stage: HookStage, request: Any, reason: str) -> HookError:
        trail: tuple[str, ...] = ()
        if isinstance(request, ResolveRequest):
            trail = request.context.trail
        return HookError(
            f"Hook '{hook.name}' {reason} during {stage.value} of {request.subject}",
            kind="HookFailed",
            hook=hook.name,
            stage=stage.value,
            specifier=request.subject,
            trail=trail,
        )
