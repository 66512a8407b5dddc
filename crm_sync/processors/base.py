"""
Processor Contract

A processor owns one queue type. It normalizes the item's payload, looks the
event type up in its handler registry, runs the handler and finally runs any
post-commit hooks the handler registered.

Handlers signal failure by raising a PipelineError subclass; anything else
is treated as transient by the Queue Manager.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple

from crm_sync.config import Settings, get_settings
from crm_sync.errors import UnsupportedEventError
from crm_sync.models.events import NormalizedEvent
from crm_sync.models.queue import QueueItem, QueueType
from crm_sync.pipeline.normalizer import normalize_event
from crm_sync.processors.projector import EntityProjector
from crm_sync.repositories.connection import StorageContext
from crm_sync.repositories.queue import QueueRepository
from crm_sync.services import Services
from crm_sync.utils.metrics import metrics
from crm_sync.utils.observability import logger

Handler = Callable[[NormalizedEvent, "HandlerContext"], Awaitable[None]]
Hook = Callable[[], Awaitable[Any]]


class HandlerRegistry:
    """
    Event type -> handler table.

    Lookup order: exact name, then prefix/substring rules in registration
    order, then the fallback. Registries compose: a rule's handler can be
    another registry's `dispatch`.
    """

    def __init__(self, name: str):
        self.name = name
        self._exact: Dict[str, Handler] = {}
        self._rules: List[Tuple[str, Tuple[str, ...], Handler]] = []
        self._fallback: Optional[Handler] = None

    def register(self, handler: Handler, *event_types: str) -> "HandlerRegistry":
        for event_type in event_types:
            self._exact[event_type] = handler
        return self

    def register_prefix(self, prefix: str, handler: Handler) -> "HandlerRegistry":
        self._rules.append(("prefix", (prefix,), handler))
        return self

    def register_contains(self, fragments: Tuple[str, ...], handler: Handler) -> "HandlerRegistry":
        self._rules.append(("contains", fragments, handler))
        return self

    def set_fallback(self, handler: Handler) -> "HandlerRegistry":
        self._fallback = handler
        return self

    def include(self, other: "HandlerRegistry") -> "HandlerRegistry":
        """Merge another registry's exact entries into this one."""
        self._exact.update(other._exact)
        return self

    def resolve(self, event_type: str) -> Optional[Handler]:
        handler = self._exact.get(event_type)
        if handler is not None:
            return handler

        for kind, fragments, rule_handler in self._rules:
            if kind == "prefix" and event_type.startswith(fragments[0]):
                return rule_handler
            if kind == "contains" and any(f in event_type for f in fragments):
                return rule_handler

        return self._fallback

    async def dispatch(self, event: NormalizedEvent, ctx: "HandlerContext") -> None:
        handler = self.resolve(event.event_type)
        if handler is None:
            raise UnsupportedEventError(
                f"{self.name} has no handler for {event.event_type}",
                event_type=event.event_type,
            )
        await handler(event, ctx)

    @property
    def event_types(self) -> FrozenSet[str]:
        return frozenset(self._exact)


@dataclass
class ProcessorDeps:
    """Explicit runtime context every processor is constructed with."""
    storage: StorageContext
    queue_repo: QueueRepository
    services: Services = field(default_factory=Services)
    settings: Settings = field(default_factory=get_settings)
    projector: Optional[EntityProjector] = None

    def __post_init__(self):
        if self.projector is None:
            self.projector = EntityProjector(self.storage.database)


@dataclass
class HandlerContext:
    """Per-item context passed to handlers."""
    deps: ProcessorDeps
    item: QueueItem
    hooks: List[Tuple[str, Hook]] = field(default_factory=list)

    @property
    def db(self) -> Any:
        return self.deps.storage.database

    @property
    def projector(self) -> EntityProjector:
        return self.deps.projector

    @property
    def services(self) -> Services:
        return self.deps.services

    @property
    def settings(self) -> Settings:
        return self.deps.settings

    def transaction(self):
        """Async context manager yielding the session for atomic writes."""
        return self.deps.storage.transaction()

    def after_commit(self, description: str, hook: Hook) -> None:
        """Run `hook` once the handler has returned. Failures are logged only."""
        self.hooks.append((description, hook))


async def store_unhandled(event: NormalizedEvent, ctx: HandlerContext) -> None:
    """
    Persist an event nobody handles so it stays discoverable, then fail it.

    Raises:
        UnsupportedEventError: always; the item is not retried
    """
    await ctx.projector.record_event(
        "unhandled_webhooks",
        event,
        {"type": event.event_type, "queue_type": str(event.queue_type), "payload": event.data},
    )
    raise UnsupportedEventError(
        f"No handler for {event.event_type}, stored in unhandled_webhooks",
        event_type=event.event_type,
    )


class BaseProcessor(ABC):
    """
    Base class for queue-type processors.

    Subclasses set `queue_type` and build their registry in `build_registry`.
    """

    queue_type: QueueType

    def __init__(self, deps: ProcessorDeps):
        self.deps = deps
        self.registry = self.build_registry()

    @abstractmethod
    def build_registry(self) -> HandlerRegistry:
        """Return the event type -> handler table for this queue."""

    @property
    def name(self) -> str:
        return type(self).__name__

    async def process_item(self, item: QueueItem) -> None:
        """
        Process one claimed item.

        Raises:
            PipelineError: on handler failure (drives retry policy)
        """
        event = normalize_event(item)
        ctx = HandlerContext(deps=self.deps, item=item)

        handler = self.registry.resolve(event.event_type)
        if handler is None:
            logger.warning(
                f"[{self.name}] Unsupported event type: {event.event_type}",
                extra={"event_id": event.event_id, "tenant_id": event.tenant_id}
            )
            raise UnsupportedEventError(
                f"Unsupported {self.queue_type} event type: {event.event_type}",
                event_type=event.event_type,
            )

        await handler(event, ctx)
        await self._run_hooks(ctx)

    async def _run_hooks(self, ctx: HandlerContext) -> None:
        for description, hook in ctx.hooks:
            try:
                await hook()
            except Exception as e:
                metrics.hook_failures.inc(queue_type=str(self.queue_type))
                logger.error(
                    f"[{self.name}] Post-commit hook failed: {description}: {e}",
                    extra={"event_id": ctx.item.event_id, "error": str(e)}
                )
