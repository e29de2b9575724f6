"""Diagnostic events.

The core never talks to a logging or UI transport directly. Every
notice it produces (progress, warnings, per-element failures) is a
Diagnostic appended to a DiagnosticLog. The log writes each entry to
the standard logging tree and forwards it to any subscribers, so callers
get both a structured record in their result and ordinary log lines.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, Field


class DiagnosticLevel(str, Enum):
    """Severity of a diagnostic notice."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_LOG_LEVELS = {
    DiagnosticLevel.DEBUG: logging.DEBUG,
    DiagnosticLevel.INFO: logging.INFO,
    DiagnosticLevel.WARN: logging.WARNING,
    DiagnosticLevel.ERROR: logging.ERROR,
}


class Diagnostic(BaseModel):
    """A single notice produced while operating on the graph."""
    level: DiagnosticLevel = Field(
        description="Severity of the notice"
    )
    message: str = Field(
        description="Human readable description"
    )
    source: str = Field(
        default="",
        description="Component or transform title that produced the notice"
    )
    detail: Optional[str] = Field(
        default=None,
        description="Error text or other supporting detail"
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    class Config:
        frozen = True


Subscriber = Callable[[Diagnostic], None]


class DiagnosticLog:
    """Ordered collection of diagnostics with logging and fan-out."""

    def __init__(
        self,
        logger_name: str = "recongraph",
        subscribers: Optional[list[Subscriber]] = None,
    ):
        self._logger = logging.getLogger(logger_name)
        self._subscribers: list[Subscriber] = list(subscribers or [])
        self.entries: list[Diagnostic] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(
        self,
        level: DiagnosticLevel,
        message: str,
        source: str = "",
        detail: Optional[str] = None,
    ) -> Diagnostic:
        diagnostic = Diagnostic(
            level=level, message=message, source=source, detail=detail,
        )
        self.entries.append(diagnostic)

        text = f"{source} ::: {message}" if source else message
        if detail:
            text = f"{text}: {detail}"
        self._logger.log(
            _LOG_LEVELS[level], text, extra={"diagnostic_source": source},
        )

        for callback in list(self._subscribers):
            try:
                callback(diagnostic)
            except Exception:
                self._logger.exception("Diagnostic subscriber %r failed", callback)
        return diagnostic

    def debug(self, message: str, source: str = "", detail: Optional[str] = None) -> Diagnostic:
        return self.emit(DiagnosticLevel.DEBUG, message, source, detail)

    def info(self, message: str, source: str = "", detail: Optional[str] = None) -> Diagnostic:
        return self.emit(DiagnosticLevel.INFO, message, source, detail)

    def warn(self, message: str, source: str = "", detail: Optional[str] = None) -> Diagnostic:
        return self.emit(DiagnosticLevel.WARN, message, source, detail)

    def error(self, message: str, source: str = "", detail: Optional[str] = None) -> Diagnostic:
        return self.emit(DiagnosticLevel.ERROR, message, source, detail)

    def of_level(self, level: DiagnosticLevel) -> list[Diagnostic]:
        return [d for d in self.entries if d.level == level]

    def __len__(self) -> int:
        return len(self.entries)
