"""
Error taxonomy for webhook ingestion.

Only signature, payload and persistence failures ever reach the HTTP caller.
Handler failures are absorbed by the dispatcher and surface through the
audit log and the stats endpoint.
"""


class WebhookIngestError(Exception):
    """Base class for errors raised by the ingestion core."""
    status_code = 500


class InvalidSignatureError(WebhookIngestError):
    """Signature header missing or does not match the raw body. Never retried."""
    status_code = 400


class MalformedEventError(WebhookIngestError):
    """Body verified but is not an event object with an id and a type."""
    status_code = 400


class PersistenceError(WebhookIngestError):
    """The event store could not complete a write or read."""
    status_code = 500
