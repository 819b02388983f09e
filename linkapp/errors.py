"""Exception types shared by the request path and the ingestion worker."""

__all__ = [
    "AnalyticsUnavailable",
    "ConsumerHalted",
    "FatalSinkError",
    "LinkStoreUnavailable",
    "SchemaMismatchError",
    "SinkError",
    "TransientSinkError",
]


class LinkStoreUnavailable(Exception):
    """The durable link store could not answer a resolve-path read."""


class AnalyticsUnavailable(Exception):
    """The analytics store could not answer a stats query."""


class SinkError(Exception):
    """A click batch could not be written to one of its sinks."""

    def __init__(self, sink: str, message: str):
        super().__init__(f"{sink}: {message}")
        self.sink = sink


class TransientSinkError(SinkError):
    """Retryable failure; the batch is left for broker redelivery."""


class FatalSinkError(SinkError):
    """Non-retryable failure (schema, auth); the consumer must stop."""


class SchemaMismatchError(FatalSinkError):
    """The live table does not match the bulk-write column contract."""


class ConsumerHalted(Exception):
    """Raised by the click consumer after a fatal sink error."""
