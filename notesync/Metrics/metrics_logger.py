# metrics_logger.py
# Description: Lightweight counters and histograms recorded through loguru
#
# Imports
import threading
from collections import deque
from typing import Dict, Optional, Any, Tuple, List, Deque
#
# Third-Party Imports
from loguru import logger
#
########################################################################################################################
#
# Functions:

# Oldest observations are dropped once a label set holds this many
MAX_HISTOGRAM_SAMPLES = 1000

_LOCK = threading.Lock()
_COUNTERS: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], float] = {}
_HISTOGRAMS: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], Deque[float]] = {}


def _label_key(labels: Optional[Dict[str, str]]) -> Tuple[Tuple[str, str], ...]:
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def log_counter(metric_name: str, value: float = 1, labels: Optional[Dict[str, str]] = None) -> None:
    """Increment a named counter."""
    key = (metric_name, _label_key(labels))
    with _LOCK:
        _COUNTERS[key] = _COUNTERS.get(key, 0) + value
    logger.debug(f"metric counter {metric_name} +{value} labels={labels or {}}")


def log_histogram(metric_name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    """Record one observation for a named histogram."""
    key = (metric_name, _label_key(labels))
    with _LOCK:
        samples = _HISTOGRAMS.get(key)
        if samples is None:
            samples = _HISTOGRAMS[key] = deque(maxlen=MAX_HISTOGRAM_SAMPLES)
        samples.append(float(value))
    logger.debug(f"metric histogram {metric_name}={value} labels={labels or {}}")


def get_counter_total(metric_name: str) -> float:
    """Sum a counter across all label sets."""
    with _LOCK:
        return sum(v for (name, _), v in _COUNTERS.items() if name == metric_name)


def get_metrics_snapshot() -> Dict[str, Any]:
    """
    Return a copy of every recorded metric.

    Counters are keyed by name and summed over labels; histograms hold the most
    recent observations per label set, up to ``MAX_HISTOGRAM_SAMPLES`` each.
    """
    with _LOCK:
        counters: Dict[str, float] = {}
        for (name, _), value in _COUNTERS.items():
            counters[name] = counters.get(name, 0) + value
        histograms: Dict[str, List[float]] = {}
        for (name, _), values in _HISTOGRAMS.items():
            histograms.setdefault(name, []).extend(values)
    return {'counters': counters, 'histograms': histograms}


def reset_metrics() -> None:
    with _LOCK:
        _COUNTERS.clear()
        _HISTOGRAMS.clear()

#
# End of metrics_logger.py
########################################################################################################################
