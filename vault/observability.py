import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

_ERROR_KINDS = frozenset({"configuration_error", "internal_error"})

@dataclass(frozen=True)
class ErrorRecord:
    kind: str
    message: str
    request_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

class EventSink(Protocol):
    def record(self, record: ErrorRecord) -> None:
        ...

class LoggingSink:
    """Writes error records to the ``vault.observability`` logger."""

    def record(self, record: ErrorRecord) -> None:
        level = logging.ERROR if record.kind in _ERROR_KINDS else logging.WARNING
        logger.log(
            level,
            "[vault] %s: %s",
            record.kind,
            record.message,
            extra={"request_id": record.request_id, "context": record.context},
        )
