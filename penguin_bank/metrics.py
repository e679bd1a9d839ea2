"""In-memory request and tool execution metrics."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

HISTORY_LIMIT = 100


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass
class RequestMetric:
    request_id: str
    method: str
    path: str
    start_time: float = field(default_factory=_now_ms)
    end_time: Optional[float] = None
    duration: Optional[float] = None
    status_code: Optional[int] = None
    user_agent: Optional[str] = None
    origin: Optional[str] = None


@dataclass
class ToolMetric:
    tool_name: str
    request_id: str
    start_time: float = field(default_factory=_now_ms)
    end_time: Optional[float] = None
    duration: Optional[float] = None
    success: bool = False
    arguments_size: Optional[int] = None
    response_size: Optional[int] = None


@dataclass
class ConnectionMetrics:
    active_connections: int = 0
    total_connections: int = 0
    sse_connections: int = 0
    http_connections: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "active_connections": self.active_connections,
            "total_connections": self.total_connections,
            "sse_connections": self.sse_connections,
            "http_connections": self.http_connections,
        }


class MetricsCollector:
    """Counters and running averages for requests and tool calls.

    Per-request records are kept for point lookups only and are capped at
    ``history_limit`` entries (oldest inserted first out). The aggregate
    counters never shrink.

    The running averages use ``avg' = (avg * (n - 1) + x) / n`` where ``n`` is
    the total number of started requests (or tool calls), not the number of
    completed ones. While other requests are still in flight, including a
    /health request reading the summary, ``n`` is larger than the number of
    samples and the average is skewed low. This happens with interleaved
    coroutines on a single event loop too. The lock keeps individual updates
    consistent across threads; it does not correct that skew.
    """

    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        self.history_limit = history_limit
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._requests: "OrderedDict[str, RequestMetric]" = OrderedDict()
            self._tools: "OrderedDict[str, ToolMetric]" = OrderedDict()
            self._connections = ConnectionMetrics()
            self._errors: Dict[str, int] = {}
            self.total_requests = 0
            self.total_tool_executions = 0
            self.average_response_time = 0.0
            self.average_tool_execution_time = 0.0
            self.error_rate = 0.0

    # Requests

    def start_request(
        self,
        request_id: str,
        method: str,
        path: str,
        user_agent: Optional[str] = None,
        origin: Optional[str] = None,
        *,
        sse: bool = False,
    ) -> None:
        metric = RequestMetric(
            request_id=request_id,
            method=method,
            path=path,
            user_agent=user_agent,
            origin=origin,
        )
        with self._lock:
            self._requests[request_id] = metric
            self.total_requests += 1
            self._connections.active_connections += 1
            self._connections.total_connections += 1
            if sse:
                self._connections.sse_connections += 1
            else:
                self._connections.http_connections += 1

    def end_request(self, request_id: str, status_code: int) -> None:
        with self._lock:
            metric = self._requests.get(request_id)
            if metric is not None:
                metric.end_time = _now_ms()
                metric.duration = metric.end_time - metric.start_time
                metric.status_code = status_code
                self.average_response_time = self._running_mean(
                    self.average_response_time, self.total_requests, metric.duration
                )
                if status_code >= 400:
                    self._increment_error(f"http_{status_code}")
                self._evict(self._requests)
            self._connections.active_connections = max(0, self._connections.active_connections - 1)

    # Tools

    def start_tool_execution(self, tool_name: str, request_id: str, arguments_size: Optional[int] = None) -> None:
        metric = ToolMetric(tool_name=tool_name, request_id=request_id, arguments_size=arguments_size)
        with self._lock:
            self._tools[self._tool_key(tool_name, request_id)] = metric
            self.total_tool_executions += 1

    def end_tool_execution(
        self,
        tool_name: str,
        request_id: str,
        success: bool,
        response_size: Optional[int] = None,
    ) -> None:
        with self._lock:
            metric = self._tools.get(self._tool_key(tool_name, request_id))
            if metric is None:
                return
            metric.end_time = _now_ms()
            metric.duration = metric.end_time - metric.start_time
            metric.success = success
            metric.response_size = response_size
            self.average_tool_execution_time = self._running_mean(
                self.average_tool_execution_time, self.total_tool_executions, metric.duration
            )
            if not success:
                self._increment_error(f"tool_{tool_name}_error")
            self._evict(self._tools)

    # Errors

    def increment_error(self, error_type: str) -> None:
        with self._lock:
            self._increment_error(error_type)

    def _increment_error(self, error_type: str) -> None:
        self._errors[error_type] = self._errors.get(error_type, 0) + 1
        total_errors = sum(self._errors.values())
        self.error_rate = total_errors / self.total_requests if self.total_requests else 0.0

    # Lookups

    def get_request_metric(self, request_id: str) -> Optional[RequestMetric]:
        return self._requests.get(request_id)

    def get_tool_metric(self, tool_name: str, request_id: str) -> Optional[ToolMetric]:
        return self._tools.get(self._tool_key(tool_name, request_id))

    def get_error_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._errors)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_requests": self.total_requests,
                "average_response_time_ms": round(self.average_response_time),
                "error_rate": round(self.error_rate, 2),
                "total_tool_executions": self.total_tool_executions,
                "average_tool_execution_time_ms": round(self.average_tool_execution_time),
                "connections": self._connections.as_dict(),
                "errors": dict(self._errors),
            }

    # Helpers

    @staticmethod
    def _tool_key(tool_name: str, request_id: str) -> str:
        return f"{request_id}_{tool_name}"

    @staticmethod
    def _running_mean(current: float, count: int, sample: float) -> float:
        if count <= 0:
            return sample
        return (current * (count - 1) + sample) / count

    def _evict(self, history: "OrderedDict[str, Any]") -> None:
        while len(history) > self.history_limit:
            history.popitem(last=False)
