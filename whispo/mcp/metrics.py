import logging
import time
from typing import Any, Optional

logger = logging.getLogger("Whispo.mcp.metrics")


class McpMetrics:
    """
    Tracks latency and outcome for a single tool call, local or remote.
    """

    def __init__(self, namespace: str, name: str, call_id: Any = None):
        self.namespace = namespace
        self.name = name
        self.call_id = call_id
        self.outcome = "no_response"
        self.error_type: Optional[str] = None
        self.response_bytes = 0
        self.started_monotonic = time.monotonic()

    def record_success(self, response_bytes: int = 0) -> None:
        self.outcome = "success"
        self.response_bytes = response_bytes

    def record_failure(self, exc: BaseException) -> None:
        self.outcome = "error"
        self.error_type = type(exc).__name__

    @property
    def elapsed_ms(self) -> float:
        return max(0.0, (time.monotonic() - self.started_monotonic) * 1000.0)

    def log_telemetry(self, budget_seconds: Optional[float] = None, warn_threshold_ms: float = 2000.0) -> None:
        """Log normalized telemetry for the tool call."""
        elapsed_ms = self.elapsed_ms
        budget_str = "n/a" if budget_seconds is None else f"{budget_seconds * 1000.0:.1f}"
        log_method = logger.warning if elapsed_ms >= warn_threshold_ms else logger.info
        log_method(
            "Tool call telemetry: tool=%s/%s id=%r outcome=%s error=%s elapsed_ms=%.1f "
            "response_bytes=%d budget_ms=%s",
            self.namespace,
            self.name,
            self.call_id,
            self.outcome,
            self.error_type or "-",
            elapsed_ms,
            self.response_bytes,
            budget_str,
        )
