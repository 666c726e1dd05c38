"""
ClaimFlow - Logging and Monitoring Utilities
Structured logging, Prometheus metrics, audit trail and error tracking
"""

import sys
import json
import logging
import traceback
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager
import structlog
from structlog.stdlib import LoggerFactory
from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# =============================================================================
# STRUCTURED LOGGING SETUP
# =============================================================================

class CustomJSONRenderer:
    """Custom JSON renderer for structured logging"""

    def __call__(self, logger, method_name, event_dict):
        """Render log entry as JSON"""
        if 'timestamp' not in event_dict:
            event_dict['timestamp'] = datetime.now(timezone.utc).isoformat()

        event_dict['level'] = method_name.upper()
        event_dict['service'] = 'claimflow'

        return json.dumps(event_dict, default=str, ensure_ascii=False)

def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None
):
    """Setup structured logging configuration"""

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="ISO"),
    ]

    if log_format == "json":
        processors.append(CustomJSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            *([logging.FileHandler(log_file)] if log_file else [])
        ]
    )

    logging.getLogger("redis").setLevel(logging.WARNING)

# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

class MetricsCollector:
    """Workflow metrics on an isolated registry"""

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()

        self.claim_transitions_total = Counter(
            'claim_transitions_total',
            'Committed claim status transitions',
            ['from_status', 'to_status'],
            registry=self.registry
        )

        self.claim_conflicts_total = Counter(
            'claim_conflicts_total',
            'Stale transitions rejected by the state store',
            registry=self.registry
        )

        self.agent_executions_total = Counter(
            'agent_executions_total',
            'Total collaborator executions',
            ['agent_name', 'status'],
            registry=self.registry
        )

        self.agent_execution_duration = Histogram(
            'agent_execution_duration_seconds',
            'Collaborator execution duration',
            ['agent_name'],
            registry=self.registry
        )

        self.workflows_total = Counter(
            'workflows_total',
            'Claims reaching a stable point',
            ['status'],
            registry=self.registry
        )

        self.workflow_duration = Histogram(
            'workflow_duration_seconds',
            'Time to drive a claim to a stable point',
            registry=self.registry
        )

        self.indexing_failures_total = Counter(
            'indexing_failures_total',
            'Best-effort indexing calls that failed',
            registry=self.registry
        )

        self.event_listener_failures_total = Counter(
            'event_listener_failures_total',
            'Lifecycle event listeners that raised',
            ['event'],
            registry=self.registry
        )

        self.queue_depth = Gauge(
            'claim_queue_depth',
            'Advance requests waiting for a worker',
            registry=self.registry
        )

    def record_transition(self, from_status: str, to_status: str):
        self.claim_transitions_total.labels(
            from_status=from_status,
            to_status=to_status
        ).inc()

    def record_conflict(self):
        self.claim_conflicts_total.inc()

    def record_agent_execution(self, agent_name: str, duration: float, success: bool = True):
        """Record collaborator execution metrics"""
        status = 'success' if success else 'error'

        self.agent_executions_total.labels(
            agent_name=agent_name,
            status=status
        ).inc()

        self.agent_execution_duration.labels(agent_name=agent_name).observe(duration)

    def record_workflow(self, status: str, duration: float = None):
        """Record stable-point outcome"""
        self.workflows_total.labels(status=status).inc()

        if duration is not None:
            self.workflow_duration.observe(duration)

    def record_indexing_failure(self):
        self.indexing_failures_total.inc()

    def record_listener_failure(self, event: str):
        self.event_listener_failures_total.labels(event=event).inc()

# =============================================================================
# ERROR TRACKING
# =============================================================================

class ErrorTracker:
    """Error tracking and monitoring"""

    def __init__(self, registry: CollectorRegistry = None):
        self.error_counter = Counter(
            'errors_total',
            'Total errors',
            ['error_type', 'service', 'severity'],
            registry=registry or CollectorRegistry()
        )

        self.logger = structlog.get_logger(__name__)

    def track_error(
        self,
        error: Exception,
        service: str = "unknown",
        severity: str = "error",
        context: Dict[str, Any] = None
    ):
        """Track an error with context"""
        error_type = type(error).__name__

        self.error_counter.labels(
            error_type=error_type,
            service=service,
            severity=severity
        ).inc()

        log_data = {
            "error_type": error_type,
            "error_message": str(error),
            "service": service,
            "severity": severity,
            "traceback": "".join(traceback.format_exception(type(error), error, error.__traceback__))
        }

        if context:
            log_data.update(context)

        if severity == "warning":
            self.logger.warning("Warning occurred", **log_data)
        else:
            self.logger.error("Error occurred", **log_data)

# =============================================================================
# PERFORMANCE MONITORING
# =============================================================================

class PerformanceMonitor:
    """Operation timing"""

    def __init__(self):
        self.logger = structlog.get_logger(__name__)

    @asynccontextmanager
    async def monitor_operation(self, operation_name: str, **context):
        """Log how long the wrapped block took"""
        start_time = datetime.now(timezone.utc)

        try:
            yield

        finally:
            duration = (datetime.now(timezone.utc) - start_time).total_seconds()

            self.logger.debug(
                "Operation completed",
                operation=operation_name,
                duration_seconds=duration,
                **context
            )

performance_monitor = PerformanceMonitor()

# =============================================================================
# AUDIT LOGGING
# =============================================================================

class AuditLogger:
    """Audit logging for claim history and reviewer actions"""

    def __init__(self):
        self.logger = structlog.get_logger("audit")

    def log_user_action(
        self,
        user_id: Optional[str],
        action: str,
        resource_type: str = None,
        resource_id: str = None,
        details: Dict[str, Any] = None
    ):
        """Log user action for audit trail"""
        audit_data = {
            "audit_type": "user_action",
            "user_id": user_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

        if details:
            audit_data["details"] = details

        self.logger.info("User action", **audit_data)

    def log_system_event(
        self,
        event_type: str,
        description: str,
        severity: str = "info",
        details: Dict[str, Any] = None
    ):
        """Log system event"""
        audit_data = {
            "audit_type": "system_event",
            "event_type": event_type,
            "description": description,
            "severity": severity,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

        if details:
            audit_data["details"] = details

        if severity == "error":
            self.logger.error("System event", **audit_data)
        elif severity == "warning":
            self.logger.warning("System event", **audit_data)
        else:
            self.logger.info("System event", **audit_data)

audit_logger = AuditLogger()
