from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

from authcore.logging import get_logger


class AuditSink(Protocol):
    def record(self, event: str, metadata: Optional[Mapping[str, Any]] = None) -> None: ...


class StructlogAuditSink:
    """Writes audit events as structured log lines on the ``audit`` logger."""

    def __init__(self, logger=None) -> None:
        self.logger = logger or get_logger("audit")

    def record(self, event: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.logger.info(event, audit=True, **dict(metadata or {}))
