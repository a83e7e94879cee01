"""
Audit sink: a fire-and-forget record of notable inventory events
(sweeps finishing, purges, blacklist changes, manual edits).
"""
import abc
from typing import Any, List, Tuple

import structlog

logger = structlog.get_logger(__name__)


class BaseAuditSink(abc.ABC):
    """Receives audit events. `record` must never raise to its caller."""

    @abc.abstractmethod
    def record(self, event: str, **fields: Any) -> None:
        pass


class StructlogAuditSink(BaseAuditSink):
    """Writes audit events to the `hostwatch.audit` structlog logger."""

    def __init__(self):
        self.logger = structlog.get_logger("hostwatch.audit").bind(audit=True)

    def record(self, event: str, **fields: Any) -> None:
        try:
            self.logger.info(event, **fields)
        except Exception as e:
            logger.warning("Audit event could not be written", event=event, error=str(e))


class MemoryAuditSink(BaseAuditSink):
    """Keeps events in a list, for inspection in tests or the CLI."""

    def __init__(self):
        self.events: List[Tuple[str, dict]] = []

    def record(self, event: str, **fields: Any) -> None:
        self.events.append((event, dict(fields)))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]
