"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with keyword fields
- Metrics collection (mining attempts, mining latency, appends, rejections)
- Health check utilities

Configuration:
- HASHSTACK_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- HASHSTACK_LOG_FORMAT: json, text (default: json in production)
- HASHSTACK_PRODUCTION: Enable production mode

Usage:
    from hashstack.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Block appended", index=block.index, nonce=block.nonce)
"""

import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("HASHSTACK_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("HASHSTACK_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("HASHSTACK_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# Standard LogRecord attributes that are never copied into structured output
_RESERVED_RECORD_KEYS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
))


# ============================================================
# STRUCTURED LOGGING
# ============================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "hashstack.core.ledger",
        "message": "Block appended",
        "index": 4,
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        fields = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_KEYS and not key.startswith("_")
        ]
        suffix = f" ({', '.join(fields)})" if fields else ""

        msg = f"{timestamp} {record.levelname:8} {record.name}: {record.getMessage()}{suffix}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Block mined", index=3, nonce=117)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        ContextLogger instance with structured output
    """
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at process startup (the CLI tools do).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)


# ============================================================
# METRICS
# ============================================================

@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    blocks_mined: int = 0
    blocks_appended: int = 0
    admissions_rejected: int = 0
    mining_attempts: int = 0

    # Histograms (simplified as lists)
    mining_latencies_ms: list = field(default_factory=list)

    def record_mining(self, attempts: int, latency_ms: float) -> None:
        """Record a completed mining search."""
        self.blocks_mined += 1
        self.mining_attempts += attempts
        self.mining_latencies_ms.append(latency_ms)
        # Keep only last 1000 samples
        if len(self.mining_latencies_ms) > 1000:
            self.mining_latencies_ms = self.mining_latencies_ms[-1000:]

    def record_append(self) -> None:
        self.blocks_appended += 1

    def record_rejection(self) -> None:
        self.admissions_rejected += 1

    def reset(self) -> None:
        """Zero every counter (for testing only)."""
        self.blocks_mined = 0
        self.blocks_appended = 0
        self.admissions_rejected = 0
        self.mining_attempts = 0
        self.mining_latencies_ms = []

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        return {
            "blocks_mined": self.blocks_mined,
            "blocks_appended": self.blocks_appended,
            "admissions_rejected": self.admissions_rejected,
            "mining_attempts": self.mining_attempts,
            "mining_latency_p50_ms": percentile(self.mining_latencies_ms, 0.5),
            "mining_latency_p95_ms": percentile(self.mining_latencies_ms, 0.95),
            "mining_latency_p99_ms": percentile(self.mining_latencies_ms, 0.99),
        }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(ledger=None, block_store=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        ledger: Ledger instance
        block_store: BlockStore instance

    Returns:
        HealthStatus with all check results
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if block_store is not None:
        try:
            checks["block_store"] = {
                "status": "healthy",
                "block_count": block_store.get_block_count(),
            }
        except Exception as e:
            checks["block_store"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

    if ledger is not None:
        latest = ledger.latest_block()
        is_valid = ledger.verify_chain_integrity()
        checks["chain_integrity"] = {
            "status": "healthy" if is_valid else "unhealthy",
            "valid": is_valid,
            "block_count": ledger.block_count,
            "head": latest.hash[:16] + "..." if latest and latest.hash else None,
        }
        if not is_valid:
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
