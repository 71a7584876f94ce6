import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "assistant-agent"
) -> None:
    """Setup structured logging configuration"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add run and session context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    context = structlog.contextvars.get_contextvars()

    run_id = context.get("run_id")
    if run_id:
        event_dict.setdefault("run_id", run_id)

    session_id = context.get("session_id")
    if session_id:
        event_dict.setdefault("session_id", session_id)

    return event_dict


class AgentLogger:
    """Specialized logger for orchestration events"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_agent_event(
        self,
        event_type: str,
        session_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        """Log agent run lifecycle events"""

        self.logger.info(
            "agent_event",
            event_type=event_type,
            session_id=session_id,
            data=data or {},
            **kwargs
        )

    def log_tool_execution(
        self,
        tool_name: str,
        arguments: Optional[str] = None,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        log = self.logger.info if success else self.logger.warning
        log(
            "tool_execution",
            tool_name=tool_name,
            arguments=arguments,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_provider_switch(
        self,
        requested: Optional[str],
        active: Optional[str],
        status: str,
        fallback: bool = False
    ):
        """Log provider activation"""

        self.logger.info(
            "provider_switch",
            requested=requested,
            active=active,
            status=status,
            fallback=fallback
        )

    def log_context_update(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log context budget changes (summaries, trims, loads)"""

        self.logger.info(
            "context_update",
            action=action,
            details=details or {}
        )

    def log_session_transition(
        self,
        transition: str,
        from_session: Optional[str],
        to_session: Optional[str] = None
    ):
        """Log session state machine transitions"""

        self.logger.info(
            "session_transition",
            transition=transition,
            from_session=from_session,
            to_session=to_session
        )

    def log_chain_step(
        self,
        chain_id: str,
        step_index: int,
        tool_name: str,
        status: str,
        error: Optional[str] = None
    ):
        """Log tool chain step status changes"""

        self.logger.info(
            "chain_step",
            chain_id=chain_id,
            step_index=step_index,
            tool_name=tool_name,
            status=status,
            error=error
        )


agent_logger = AgentLogger("agent")


class MetricsCollector:
    """Collect and export metrics"""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}

    @staticmethod
    def _key(name: str, tags: Optional[Dict[str, str]]) -> str:
        if not tags:
            return name
        rendered = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
        return f"{name}[{rendered}]"

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        key = self._key(f"latency.{operation}", tags)
        if key not in self.metrics:
            self.metrics[key] = {
                "count": 0,
                "sum": 0.0,
                "min": float('inf'),
                "max": 0.0
            }

        entry = self.metrics[key]
        entry["count"] += 1
        entry["sum"] += duration_ms
        entry["min"] = min(entry["min"], duration_ms)
        entry["max"] = max(entry["max"], duration_ms)

        agent_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        key = self._key(f"counter.{name}", tags)
        self.metrics[key] = self.metrics.get(key, 0) + value

        agent_logger.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        """Set a gauge metric"""

        self.metrics[self._key(f"gauge.{name}", tags)] = value

        agent_logger.logger.debug(
            "metric",
            metric_type="gauge",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> int:
        return self.metrics.get(self._key(f"counter.{name}", tags), 0)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        for key, value in self.metrics.items():
            if isinstance(value, dict):
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                    "min": value["min"] if value["min"] != float('inf') else 0,
                    "max": value["max"]
                }
            else:
                summary[key] = value

        return summary

    def reset(self):
        self.metrics.clear()


metrics = MetricsCollector()
