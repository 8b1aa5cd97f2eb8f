# errors.py
# Exception taxonomy for the agent loop.
#
# Only TransportUnavailableError is ever raised past Scaffold.run(). Every
# other error here is caught inside the loop and folded into the result.


class AutoloopError(Exception):
    """Base class for all agent loop errors."""


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class TransportError(AutoloopError):
    """Raised by a chat transport when a model call fails."""


class TransportUnavailableError(TransportError):
    """The very first model call of a run failed. The caller gets this instead of a message."""


class StreamingToolCallError(TransportError):
    """Raised mid-stream by a transport that cannot stream tool-call arguments."""


class StreamFallback(AutoloopError):
    """
    Recoverable signal from the aggregator: the stream broke on tool-call
    fragments and the same request must be retried as one blocking call.
    """

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Streaming with tools failed, retry as blocking call: {cause}")
        self.cause = cause


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ArgumentParseError(AutoloopError):
    """Tool-call argument text is not a JSON object. Terminal for that call, never retried."""


class ToolNotFoundError(AutoloopError):
    """The model requested a tool absent from the registry."""


class ToolExecutionError(AutoloopError):
    """A tool handler reported failure. Retried by the dispatcher up to the limit."""
