"""Collector for degraded-input warnings."""

import structlog


class Diagnostics:
    """Records fallback decisions so callers can assert on them.

    Each warning is a stable snake_case code, also emitted as a structlog
    warning event with its context.
    """

    def __init__(self, logger=None) -> None:
        self.warnings: list[str] = []
        self._logger = logger or structlog.get_logger(__name__)

    def warn(self, code: str, **context) -> None:
        self.warnings.append(code)
        self._logger.warning(code, **context)

    def __contains__(self, code: str) -> bool:
        return code in self.warnings
