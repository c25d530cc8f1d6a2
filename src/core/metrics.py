"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, Iterable, List, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_publish_outcomes_total: Dict[Tuple[str, str], int] = defaultdict(int)
_editing_lock_conflicts_total: Dict[str, int] = defaultdict(int)
_quota_blocks_total: Dict[Tuple[str, str], int] = defaultdict(int)
_usage_record_failures_total: Dict[str, int] = defaultdict(int)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_publish_outcome(*, platform: str, status: str, count: int = 1) -> None:
    if count <= 0:
        return
    with _lock:
        key = (_normalize_label(platform), _normalize_label(status))
        _publish_outcomes_total[key] += int(count)


def record_editing_lock_conflict(*, operation: str) -> None:
    with _lock:
        _editing_lock_conflicts_total[_normalize_label(operation)] += 1


def record_quota_block(*, kind: str, reason: str) -> None:
    with _lock:
        _quota_blocks_total[(_normalize_label(kind), _normalize_label(reason))] += 1


def record_usage_failure(*, kind: str) -> None:
    with _lock:
        _usage_record_failures_total[_normalize_label(kind)] += 1


def _counter_block(
    name: str,
    help_text: str,
    label_names: Tuple[str, ...],
    values: Iterable[Tuple[Tuple[str, ...], int]],
) -> List[str]:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} counter"]
    for labels, value in sorted(values):
        rendered = ",".join(
            f'{label_name}="{_escape_label(label_value)}"'
            for label_name, label_value in zip(label_names, labels)
        )
        lines.append(f"{name}{{{rendered}}} {value}")
    return lines


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        publish_outcomes = dict(_publish_outcomes_total)
        lock_conflicts = dict(_editing_lock_conflicts_total)
        quota_blocks = dict(_quota_blocks_total)
        usage_failures = dict(_usage_record_failures_total)

    lines = [
        "# HELP postpilot_build_info Build metadata.",
        "# TYPE postpilot_build_info gauge",
        (
            f'postpilot_build_info{{app_name="{_escape_label(app_name)}",'
            f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
        ),
        "# HELP postpilot_process_uptime_seconds Process uptime in seconds.",
        "# TYPE postpilot_process_uptime_seconds gauge",
        f"postpilot_process_uptime_seconds {uptime:.6f}",
    ]

    lines.extend(
        _counter_block(
            "postpilot_http_requests_total",
            "Total HTTP requests.",
            ("method", "path", "status"),
            http_total.items(),
        )
    )

    lines.extend(
        [
            "# HELP postpilot_http_request_duration_seconds Request duration summary.",
            "# TYPE postpilot_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(
            (
                f'postpilot_http_request_duration_seconds_sum{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value:.6f}'
            )
        )
    for (method, path), value in sorted(duration_count.items()):
        lines.append(
            (
                f'postpilot_http_request_duration_seconds_count{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value}'
            )
        )

    lines.extend(
        _counter_block(
            "postpilot_publish_outcomes_total",
            "Publishing pipeline outcomes by platform and status.",
            ("platform", "status"),
            publish_outcomes.items(),
        )
    )
    lines.extend(
        _counter_block(
            "postpilot_editing_lock_conflicts_total",
            "Editing session requests rejected because another actor holds the lock.",
            ("operation",),
            (((operation,), value) for operation, value in lock_conflicts.items()),
        )
    )
    lines.extend(
        _counter_block(
            "postpilot_quota_blocks_total",
            "Metered actions refused by the quota gate.",
            ("kind", "reason"),
            quota_blocks.items(),
        )
    )
    lines.extend(
        _counter_block(
            "postpilot_usage_record_failures_total",
            "Usage tracking writes that failed after a completed action.",
            ("kind",),
            (((kind,), value) for kind, value in usage_failures.items()),
        )
    )

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _publish_outcomes_total.clear()
        _editing_lock_conflicts_total.clear()
        _quota_blocks_total.clear()
        _usage_record_failures_total.clear()
    _started_at = time.time()
