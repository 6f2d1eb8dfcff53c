"""User-facing notifications.

The engine never raises across its boundary; failures the user should see
("Failed to associate branch") go through a ``Notifier``. Editors and other
front ends plug in their own; the default writes to the log.
"""

from __future__ import annotations

from typing import Protocol

from .observability import log_error, log_info, log_warning


class Notifier(Protocol):
    def info(self, message: str) -> None: ...

    def warn(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class LoggingNotifier:
    def info(self, message: str) -> None:
        log_info(f"[NOTIFY] {message}")

    def warn(self, message: str) -> None:
        log_warning(f"[NOTIFY] {message}")

    def error(self, message: str) -> None:
        log_error(f"[NOTIFY] {message}")
