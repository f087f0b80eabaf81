import json
import sys
import traceback

import services.logger as log

l = log.get_logger()


class BridgeError(Exception):
    """Base class for every error raised by the bridge itself."""


class TransportError(BridgeError):
    """A wire call failed at the network level or with a non-2xx response.

    Carries the destination, the payload that was being sent and the acting
    bot identity so the caller can report exactly what was lost.
    """

    def __init__(self, url: str, data=None, self_id: str = "", status: int | None = None):
        super().__init__(f"Error when trying to request {url}, data: {_dump(data)}")
        self.url = url
        self.data = data
        self.self_id = self_id
        self.status = status


class InvalidMessageError(BridgeError):
    """Caller misuse detected before any network call was made."""


class SecurityError(BridgeError):
    """An inbound request failed signature verification."""


def _dump(data) -> str:
    try:
        return json.dumps(data, ensure_ascii=False)
    except (TypeError, ValueError):
        # multipart bodies and raw bytes are not JSON serializable
        return repr(data)


def _handle_uncaught_exceptions(exc_type, exc_value, exc_traceback):
    """Global exception handler for uncaught exceptions."""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return

    l.critical(
        "Unhandled exception caught:\n"
        + ''.join(traceback.format_exception(exc_type, exc_value, exc_traceback))
    )


def install_excepthook() -> None:
    sys.excepthook = _handle_uncaught_exceptions
