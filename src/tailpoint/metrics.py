from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, NamedTuple, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Histogram, Summary, generate_latest

from tailpoint.errors import ConfigError, FieldError
from tailpoint.logformat import ParsedEntry

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "nginx"
LABEL_NAMES = ("status", "method")

# Fields the aggregator reads; anything else in the format is ignored.
STATUS = "status"
REQUEST = "request"
BODY_BYTES_SENT = "body_bytes_sent"
BYTES_SENT = "bytes_sent"
UPSTREAM_RESPONSE_LENGTH = "upstream_response_length"
UPSTREAM_RESPONSE_TIME = "upstream_response_time"
REQUEST_TIME = "request_time"

KNOWN_FIELDS = (
    STATUS,
    REQUEST,
    BODY_BYTES_SENT,
    BYTES_SENT,
    UPSTREAM_RESPONSE_LENGTH,
    UPSTREAM_RESPONSE_TIME,
    REQUEST_TIME,
)


class LabelSet(NamedTuple):
    status: str
    method: str


def _numeric(entry: ParsedEntry, name: str) -> Optional[float]:
    try:
        return entry.float_field(name)
    except FieldError as e:
        logger.debug("Skipping %s: %s", name, e)
        return None


@dataclass(frozen=True)
class AccessRecord:
    """The part of a parsed line that metrics are derived from."""

    status: Optional[str] = None
    request: Optional[str] = None
    body_bytes_sent: Optional[float] = None
    bytes_sent: Optional[float] = None
    upstream_response_length: Optional[float] = None
    upstream_response_time: Optional[float] = None
    request_time: Optional[float] = None

    @classmethod
    def from_entry(cls, entry: ParsedEntry) -> "AccessRecord":
        return cls(
            status=entry.get(STATUS),
            request=entry.get(REQUEST),
            body_bytes_sent=_numeric(entry, BODY_BYTES_SENT),
            bytes_sent=_numeric(entry, BYTES_SENT),
            upstream_response_length=_numeric(entry, UPSTREAM_RESPONSE_LENGTH),
            upstream_response_time=_numeric(entry, UPSTREAM_RESPONSE_TIME),
            request_time=_numeric(entry, REQUEST_TIME),
        )

    def label_set(self) -> LabelSet:
        # method is whatever the client sent first; not checked against known verbs
        chunks = (self.request or "").split()
        return LabelSet(status=self.status or "", method=chunks[0] if chunks else "")


class MetricRegistry:
    """Process-wide metric state.

    Owns its own CollectorRegistry so that nothing leaks into, or depends on,
    prometheus_client's global default registry. Static labels are fixed at
    construction and prefixed to every vector metric's label values.
    """

    def __init__(
        self,
        static_labels: Optional[Mapping[str, str]] = None,
        namespace: str = DEFAULT_NAMESPACE,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.static_labels: Dict[str, str] = dict(static_labels or {})
        clash = set(self.static_labels) & set(LABEL_NAMES)
        if clash:
            raise ConfigError(f"static labels clash with per-line labels: {', '.join(sorted(clash))}")

        self.registry = registry if registry is not None else CollectorRegistry()
        self._static_values: Tuple[str, ...] = tuple(self.static_labels.values())
        labelnames = tuple(self.static_labels) + LABEL_NAMES

        try:
            self.count_total = Counter(
                "http_response_count_total", "Amount of processed HTTP requests",
                labelnames, namespace=namespace, registry=self.registry,
            )
            self.bytes_total = Counter(
                "http_response_bytes_total", "Total amount of transferred bytes",
                labelnames, namespace=namespace, registry=self.registry,
            )
            self.upstream_seconds = Summary(
                "http_upstream_time_seconds", "Time needed by upstream servers to handle requests",
                labelnames, namespace=namespace, registry=self.registry,
            )
            self.upstream_seconds_hist = Histogram(
                "http_upstream_time_seconds_hist", "Time needed by upstream servers to handle requests",
                labelnames, namespace=namespace, registry=self.registry,
            )
            self.upstream_bytes = Counter(
                "http_upstream_bytes", "Amount of upstream bytes received",
                labelnames, namespace=namespace, registry=self.registry,
            )
            self.response_seconds = Summary(
                "http_response_time_seconds", "Time needed by the server to handle requests",
                labelnames, namespace=namespace, registry=self.registry,
            )
            self.response_seconds_hist = Histogram(
                "http_response_time_seconds_hist", "Time needed by the server to handle requests",
                labelnames, namespace=namespace, registry=self.registry,
            )
            self.response_bytes = Counter(
                "http_response_sent_bytes", "Amount of response bytes sent, headers included",
                labelnames, namespace=namespace, registry=self.registry,
            )
            self.parse_errors_total = Counter(
                "parse_errors_total", "Total numbers of log file lines that could not be parsed",
                namespace=namespace, registry=self.registry,
            )
        except ValueError as e:
            raise ConfigError(f"invalid metric labels or namespace: {e}") from e

    def _labels(self, labels: LabelSet) -> Tuple[str, ...]:
        return self._static_values + tuple(labels)

    def observe(self, record: AccessRecord) -> LabelSet:
        """Apply one access record. Each numeric field is independent of the others."""
        labels = record.label_set()
        values = self._labels(labels)

        self.count_total.labels(*values).inc()

        if record.body_bytes_sent is not None:
            self._add_bytes(self.bytes_total, values, BODY_BYTES_SENT, record.body_bytes_sent)
        if record.upstream_response_length is not None:
            self._add_bytes(self.upstream_bytes, values, UPSTREAM_RESPONSE_LENGTH, record.upstream_response_length)
        if record.bytes_sent is not None:
            self._add_bytes(self.response_bytes, values, BYTES_SENT, record.bytes_sent)

        if record.upstream_response_time is not None:
            self.upstream_seconds.labels(*values).observe(record.upstream_response_time)
            self.upstream_seconds_hist.labels(*values).observe(record.upstream_response_time)

        if record.request_time is not None:
            self.response_seconds.labels(*values).observe(record.request_time)
            self.response_seconds_hist.labels(*values).observe(record.request_time)

        return labels

    def _add_bytes(self, counter: Counter, values: Tuple[str, ...], name: str, amount: float) -> None:
        if amount < 0:
            logger.debug("Skipping %s: negative value %s", name, amount)
            return
        counter.labels(*values).inc(amount)

    def record_parse_error(self) -> None:
        self.parse_errors_total.inc()

    def exposition(self) -> bytes:
        return generate_latest(self.registry)
