"""
Handler registry - maps a Stripe event type to the business handler for it.

Handlers are supplied by the business layer:

    registry = HandlerRegistry()

    @registry.handler("payout.paid")
    async def on_payout_paid(event: WebhookEvent) -> ProcessingResult:
        ...

Event types nobody registered resolve to a no-op success so that event
types Stripe adds later never pile up as failures.
"""
import importlib
import inspect
import logging
from typing import Awaitable, Callable, Union

from webhook_ingest.models.webhook_event import WebhookEvent
from webhook_ingest.schemas.webhook_events import ProcessingResult

logger = logging.getLogger(__name__)

WebhookHandler = Callable[
    [WebhookEvent], Union[ProcessingResult, Awaitable[ProcessingResult]]
]


async def noop_handler(event: WebhookEvent) -> ProcessingResult:
    logger.info(
        "Unhandled %s webhook event type: %s", event.source, event.event_type,
        extra={"provider_event_id": event.provider_event_id},
    )
    return ProcessingResult(success=True)


class HandlerRegistry:
    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}

    def register(self, event_type: str, handler: WebhookHandler) -> None:
        if not event_type:
            raise ValueError("event_type is required")
        if event_type in self._handlers:
            logger.warning("Replacing handler for %s", event_type)
        self._handlers[event_type] = handler

    def handler(self, *event_types: str):
        """Decorator form of register(); one handler may cover several types."""
        def decorator(func: WebhookHandler) -> WebhookHandler:
            for event_type in event_types:
                self.register(event_type, func)
            return func
        return decorator

    def resolve(self, event_type: str) -> WebhookHandler:
        return self._handlers.get(event_type, noop_handler)

    def is_registered(self, event_type: str) -> bool:
        return event_type in self._handlers

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def process(self, event: WebhookEvent) -> ProcessingResult:
        """Run the handler for this event; sync and async handlers both work."""
        result = self.resolve(event.event_type)(event)
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, ProcessingResult):
            raise TypeError(
                f"Handler for {event.event_type} returned {type(result).__name__}, "
                "expected ProcessingResult"
            )
        return result


def load_handler_modules(registry: HandlerRegistry, module_paths: str) -> list[str]:
    """
    Import each comma-separated module and call its register_handlers(registry).
    Returns the modules loaded. Import errors propagate - a misconfigured
    handler module must stop startup, not silently drop events.
    """
    loaded = []
    for path in [p.strip() for p in module_paths.split(",") if p.strip()]:
        module = importlib.import_module(path)
        register_fn = getattr(module, "register_handlers", None)
        if register_fn is None:
            raise AttributeError(f"Handler module {path} has no register_handlers(registry)")
        register_fn(registry)
        loaded.append(path)
    if loaded:
        logger.info(
            "Loaded webhook handler modules: %s (%d event types)",
            ", ".join(loaded), len(registry.event_types),
        )
    return loaded
