"""Shared plumbing for agents that drive the control plane cycle by cycle."""
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from config.settings import AppConfig, get_config
from utils.exceptions import ControlPlaneError


class BaseAgent(ABC):
    """
    Cycle bookkeeping, correlated logging and error wrapping.

    Each call to ``start_cycle`` opens a new scan cycle; every log line the
    agent emits afterwards carries that cycle's correlation id and the
    agent name.
    """

    def __init__(self, config: Optional[AppConfig] = None):
        self.config = config or get_config()
        self.name = self.__class__.__name__
        self.logger = logging.getLogger(f"agents.{self.name}")
        self._correlation_id: Optional[str] = None
        self._cycles_processed = 0
        self._last_error: Optional[str] = None

    @property
    def correlation_id(self) -> Optional[str]:
        """Correlation id of the cycle in progress."""
        return self._correlation_id

    @property
    def cycles_processed(self) -> int:
        return self._cycles_processed

    def start_cycle(self) -> str:
        """Open a new scan cycle and return its correlation id."""
        self._cycles_processed += 1
        self._correlation_id = f"cp-{self._cycles_processed:06d}-{uuid.uuid4().hex[:8]}"
        return self._correlation_id

    def _log(self, level: int, message: str, exc: Optional[BaseException] = None, **fields: Any) -> None:
        extra = {"correlation_id": self._correlation_id, "agent": self.name}
        extra.update(fields)
        self.logger.log(level, message, extra=extra, exc_info=exc)

    def log_debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, **fields)

    def log_info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, **fields)

    def log_warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, **fields)

    def handle_error(
        self,
        error: Exception,
        context: Optional[Dict[str, Any]] = None
    ) -> ControlPlaneError:
        """
        Attach the current cycle to ``error`` and log it.

        Control plane errors are returned as-is with the correlation id and
        context filled in; anything else is wrapped in a ControlPlaneError.
        """
        context = context or {}
        if isinstance(error, ControlPlaneError):
            error.correlation_id = error.correlation_id or self._correlation_id
            error.details.update(context)
            wrapped = error
        else:
            wrapped = ControlPlaneError(str(error), correlation_id=self._correlation_id, details=context)

        self._last_error = f"{type(error).__name__}: {error}"
        self._log(
            logging.ERROR, f"❌ {self.name} failed: {error}", exc=error,
            event="agent_error", **wrapped.to_log_fields()
        )
        return wrapped

    @abstractmethod
    def process(self, *args: Any, **kwargs: Any) -> Any:
        """Run one cycle."""

    def health_check(self) -> Dict[str, Any]:
        return {
            "agent": self.name,
            "status": "degraded" if self._last_error else "healthy",
            "correlation_id": self._correlation_id,
            "cycles_processed": self._cycles_processed,
            "last_error": self._last_error,
        }
