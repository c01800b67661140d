from collections import defaultdict
from threading import Lock
from typing import Dict, Tuple


_lock = Lock()

# (path, status) -> count
_http_requests_total: Dict[Tuple[str, str], int] = defaultdict(int)

# (operation, result) -> count
_collection_operations_total: Dict[Tuple[str, str], int] = defaultdict(int)

# simple latency buckets in ms
_latency_buckets = {
    "100": 0,
    "500": 0,
    "+Inf": 0,
}
_latency_count = 0

_sync_clients = 0


def inc_http_request(path: str, status: int) -> None:
    with _lock:
        _http_requests_total[(path, str(status))] += 1


def inc_collection_operation(operation: str, result: str) -> None:
    with _lock:
        _collection_operations_total[(operation, result)] += 1


def set_sync_clients(count: int) -> None:
    global _sync_clients
    with _lock:
        _sync_clients = count


def observe_latency_ms(latency_ms: float) -> None:
    global _latency_count
    with _lock:
        _latency_count += 1
        if latency_ms <= 100:
            _latency_buckets["100"] += 1
        if latency_ms <= 500:
            _latency_buckets["500"] += 1
        _latency_buckets["+Inf"] += 1


def collection_operation_count(operation: str, result: str) -> int:
    return _collection_operations_total.get((operation, result), 0)


def _labelled(name: str, label_names: Tuple[str, ...], counter: Dict[Tuple[str, ...], int]) -> list[str]:
    lines = []
    for label_values, value in counter.items():
        labels = ",".join(f'{k}="{v}"' for k, v in zip(label_names, label_values))
        lines.append(f"{name}{{{labels}}} {value}")
    return lines


def render_metrics() -> str:
    """Return plain text metrics."""
    with _lock:
        lines = _labelled("http_requests_total", ("path", "status"), _http_requests_total)
        lines += _labelled(
            "collection_operations_total", ("operation", "result"), _collection_operations_total
        )
        lines += _labelled(
            "request_latency_ms_bucket", ("le",), {(le,): v for le, v in _latency_buckets.items()}
        )
        lines.append(f"request_latency_ms_count {_latency_count}")
        lines.append(f"sync_clients {_sync_clients}")

    return "\n".join(lines) + "\n"
