"""Observability and Metrics for the assistant gateway."""

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

from .config import GatewayConfig
from .models import CostAlertPolicy

logger = logging.getLogger(__name__)

LATENCY_BUCKETS = (0.1, 0.5, 1.0, 2.0, 5.0)

# Dollars per token
MODEL_UNIT_COSTS: dict[str, float] = {
    "gemini-pro": 0.00001,
    "gemini-pro-vision": 0.00002,
}


@dataclass(frozen=True)
class CostAlert:
    """Raised (as an event, not an exception) when spend crosses the threshold."""
    cost: float
    model: str
    threshold: float
    policy: CostAlertPolicy


@dataclass(frozen=True)
class CostRecord:
    """Result of recording one AI call's spend."""
    model: str
    tokens: int
    cost: float
    alert: Optional[CostAlert] = None


def _utc_today(clock: Callable[[], float]) -> date:
    return datetime.fromtimestamp(clock(), tz=timezone.utc).date()


class MetricsCollector:
    """
    Collects request, latency and AI spend metrics.

    Metrics live in a private prometheus registry so each application
    instance (and each test) owns its own series. Reads go through
    prometheus_client, whose per-metric locks keep snapshot() safe to call
    while requests are being recorded.

    Cost alerting has two policies:
    - PER_CALL: alert when a single call's cost exceeds the threshold
    - DAILY_TOTAL: alert once per UTC day when the day's running total
      exceeds the threshold; the day rolls over on the first call after
      midnight
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        cost_threshold: float = 50.0,
        alert_policy: CostAlertPolicy = CostAlertPolicy.PER_CALL,
        unit_costs: Optional[dict[str, float]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize metrics collector.

        Args:
            registry: Prometheus registry (a fresh one when omitted)
            cost_threshold: Alert threshold in dollars
            alert_policy: How the threshold is compared
            unit_costs: Dollars per token by model id
            clock: Wall-clock source for the daily ledger
        """
        self._registry = registry or CollectorRegistry()
        self._cost_threshold = cost_threshold
        self._alert_policy = alert_policy
        self._unit_costs = dict(MODEL_UNIT_COSTS if unit_costs is None else unit_costs)
        self._clock = clock
        self._start_time = time.time()

        self._ledger_lock = threading.Lock()
        self._ledger_day = _utc_today(clock)
        self._ledger_total = 0.0
        self._ledger_alerted = False

        self._requests = Counter(
            "api_requests_total",
            "Total number of API requests",
            ["endpoint", "status"],
            registry=self._registry,
        )
        self._latency = Histogram(
            "api_request_duration_seconds",
            "API request latency",
            ["endpoint"],
            buckets=LATENCY_BUCKETS,
            registry=self._registry,
        )
        self._cost = Counter(
            "ai_request_cost_dollars_total",
            "Total cost of AI requests in dollars",
            ["model"],
            registry=self._registry,
        )
        self._tokens = Counter(
            "ai_tokens_total",
            "Total tokens reported by the AI backend",
            ["model"],
            registry=self._registry,
        )
        self._alerts = Counter(
            "ai_cost_alerts_total",
            "Cost threshold alerts emitted",
            ["model"],
            registry=self._registry,
        )

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "MetricsCollector":
        return cls(
            cost_threshold=config.cost_alert_threshold,
            alert_policy=config.cost_alert_policy,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def record_request(self, endpoint: str, status_code: int, duration_seconds: float) -> None:
        """Count a finished request and observe its latency."""
        self._requests.labels(endpoint=endpoint, status=str(status_code)).inc()
        self._latency.labels(endpoint=endpoint).observe(duration_seconds)

    def record_cost(self, model: str, tokens: int) -> CostRecord:
        """
        Add one AI call's spend to the per-model ledger.

        Args:
            model: Model identifier
            tokens: Tokens billed for the call

        Returns:
            CostRecord with the call's cost and any alert it triggered
        """
        if tokens < 0:
            raise ValueError("token count cannot be negative")

        cost = self._unit_costs.get(model, 0.0) * tokens
        self._cost.labels(model=model).inc(cost)
        self._tokens.labels(model=model).inc(tokens)

        alert = self._check_threshold(model, cost)
        if alert is not None:
            self._alerts.labels(model=model).inc()
            logger.warning(
                "Daily AI cost threshold exceeded",
                extra={"cost": alert.cost, "model": model, "threshold": alert.threshold},
            )
        return CostRecord(model=model, tokens=tokens, cost=cost, alert=alert)

    def _check_threshold(self, model: str, cost: float) -> Optional[CostAlert]:
        if self._alert_policy == CostAlertPolicy.PER_CALL:
            if cost > self._cost_threshold:
                return CostAlert(cost, model, self._cost_threshold, self._alert_policy)
            return None

        with self._ledger_lock:
            today = _utc_today(self._clock)
            if today != self._ledger_day:
                self._ledger_day = today
                self._ledger_total = 0.0
                self._ledger_alerted = False

            self._ledger_total += cost
            if self._ledger_total > self._cost_threshold and not self._ledger_alerted:
                self._ledger_alerted = True
                return CostAlert(self._ledger_total, model, self._cost_threshold, self._alert_policy)
        return None

    def get_daily_total(self) -> float:
        """Spend recorded for the current UTC day (DAILY_TOTAL policy only)."""
        with self._ledger_lock:
            if _utc_today(self._clock) != self._ledger_day:
                return 0.0
            return self._ledger_total

    def get_total_cost(self, model: str) -> float:
        """Cumulative spend for a model since process start."""
        value = self._registry.get_sample_value("ai_request_cost_dollars_total", {"model": model})
        return value or 0.0

    def get_request_count(self, endpoint: str, status_code: int) -> float:
        value = self._registry.get_sample_value(
            "api_requests_total", {"endpoint": endpoint, "status": str(status_code)}
        )
        return value or 0.0

    def get_latency_count(self, endpoint: str) -> float:
        value = self._registry.get_sample_value(
            "api_request_duration_seconds_count", {"endpoint": endpoint}
        )
        return value or 0.0

    def snapshot(self) -> str:
        """Render all metrics in the Prometheus text exposition format."""
        return generate_latest(self._registry).decode("utf-8")

    def get_uptime_seconds(self) -> float:
        """Get gateway uptime in seconds."""
        return time.time() - self._start_time


class NamedCounters:
    """
    Lightweight named counters for ad hoc counting.

    Independent of the prometheus series; owned by the application and
    passed to whoever needs it.
    """

    def __init__(self, debug: bool = False):
        self._debug = debug
        self._values: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def incr(self, name: str, n: int = 1) -> int:
        with self._lock:
            self._values[name] += n
            value = self._values[name]
        if self._debug:
            logger.info("[metrics] %s = %s", name, value)
        return value

    def get_value(self, name: str) -> int:
        with self._lock:
            return self._values.get(name, 0)

    def reset_all(self) -> None:
        with self._lock:
            self._values.clear()

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._values)


class RequestLogger:
    """Structured logging for requests."""

    def __init__(self, log_level: int = logging.INFO):
        """Initialize request logger."""
        self._logger = logging.getLogger("assistant_gateway.requests")
        self._logger.setLevel(log_level)

    def log_request(
        self,
        endpoint: str,
        status_code: int,
        latency_ms: float,
        rate_limited: bool = False,
        error: Optional[str] = None,
    ) -> None:
        """Log a request with structured fields."""
        log_data = {
            "endpoint": endpoint,
            "status_code": status_code,
            "latency_ms": round(latency_ms, 2),
            "rate_limited": rate_limited,
        }

        if error and status_code >= 500:
            log_data["error"] = error
            self._logger.error("Request failed", extra=log_data)
        elif rate_limited or status_code >= 400:
            if error:
                log_data["error"] = error
            self._logger.warning("Request rejected", extra=log_data)
        else:
            self._logger.info("Request completed", extra=log_data)
