"""Per-connection round-trip sampling and network health.

Each live connection owns a bounded window of latency samples (FIFO,
20 entries by default). Latency and jitter are derived on demand from the
most recent 10 samples and never stored.
"""
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from pydantic import BaseModel

from .models import HealthLabel, now_ms

logger = logging.getLogger(__name__)

# Maximum number of samples kept per connection
DEFAULT_WINDOW_SIZE = 20

# Number of most recent samples used for latency/jitter
DEFAULT_AVERAGE_WINDOW = 10


def health_label(latency: float, jitter: float, packet_loss: float = 0) -> HealthLabel:
    """Classify connection quality. Upper bounds are exclusive."""
    if latency <= 0:
        return HealthLabel.MEASURING
    if latency < 50 and jitter < 10 and packet_loss < 1:
        return HealthLabel.EXCELLENT
    if latency < 100 and jitter < 20 and packet_loss < 3:
        return HealthLabel.GOOD
    if latency < 200 and jitter < 30 and packet_loss < 5:
        return HealthLabel.FAIR
    return HealthLabel.POOR


@dataclass
class MetricsWindow:
    samples: Deque[float]
    sent_count: int = 0
    received_count: int = 0
    connection_start: float = field(default_factory=time.time)


class PongPayload(BaseModel):
    """Round-trip acknowledgment pushed after every sample."""
    clientTimestamp: float
    serverTimestamp: float
    latency: float
    averageLatency: float
    jitter: float
    connectionQuality: HealthLabel


class NetworkStats(BaseModel):
    latency: float
    jitter: float
    packetLoss: float = 0
    connectionQuality: HealthLabel
    packetsSent: int
    packetsReceived: int
    totalMeasurements: int
    connectionSeconds: float
    timestamp: float


class MetricsSampler:
    """Owns the metrics windows of all live connections.

    Every accessor treats an unknown connection id as benign: queries
    return 0 and mutations are no-ops.
    """

    def __init__(
        self,
        window_size: int = DEFAULT_WINDOW_SIZE,
        average_window: int = DEFAULT_AVERAGE_WINDOW,
    ) -> None:
        self.window_size = window_size
        self.average_window = average_window
        # connection_id -> MetricsWindow
        self._windows: Dict[str, MetricsWindow] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def open(self, connection_id: str) -> None:
        if connection_id not in self._windows:
            self._windows[connection_id] = MetricsWindow(
                samples=deque(maxlen=self.window_size)
            )

    def close(self, connection_id: str) -> None:
        self._windows.pop(connection_id, None)

    def has_window(self, connection_id: str) -> bool:
        return connection_id in self._windows

    # =========================================================================
    # Sampling
    # =========================================================================

    def record_sample(self, connection_id: str, latency_ms: float) -> bool:
        """Append a latency reading, evicting the oldest beyond the window size.

        Returns:
            False if the connection is unknown (already disconnected).
        """
        window = self._windows.get(connection_id)
        if window is None:
            logger.debug(f"[Metrics] Sample for unknown connection {connection_id} ignored")
            return False
        window.samples.append(latency_ms)
        return True

    def record_ping(self, connection_id: str, client_timestamp: float) -> Optional[PongPayload]:
        """Record a client ping and build the pong for it.

        Returns:
            The pong payload, or None if the connection is unknown.
        """
        server_timestamp = now_ms()
        latency = server_timestamp - client_timestamp
        if not self.record_sample(connection_id, latency):
            return None
        average = self.average_latency(connection_id)
        jitter = self.jitter(connection_id)
        return PongPayload(
            clientTimestamp=client_timestamp,
            serverTimestamp=server_timestamp,
            latency=latency,
            averageLatency=average,
            jitter=jitter,
            connectionQuality=health_label(average, jitter),
        )

    def _recent(self, connection_id: str) -> List[float]:
        window = self._windows.get(connection_id)
        if window is None:
            return []
        return list(window.samples)[-self.average_window:]

    def samples(self, connection_id: str) -> List[float]:
        window = self._windows.get(connection_id)
        return list(window.samples) if window else []

    def average_latency(self, connection_id: str) -> float:
        recent = self._recent(connection_id)
        if not recent:
            return 0
        return sum(recent) / len(recent)

    def jitter(self, connection_id: str) -> float:
        """Mean absolute difference between consecutive recent samples."""
        recent = self._recent(connection_id)
        if len(recent) < 2:
            return 0
        diffs = [abs(b - a) for a, b in zip(recent, recent[1:])]
        return sum(diffs) / len(diffs)

    def quality(self, connection_id: str) -> HealthLabel:
        return health_label(self.average_latency(connection_id), self.jitter(connection_id))

    # =========================================================================
    # Traffic counters
    # =========================================================================

    def count_sent(self, connection_id: str) -> None:
        window = self._windows.get(connection_id)
        if window is not None:
            window.sent_count += 1

    def count_received(self, connection_id: str) -> None:
        window = self._windows.get(connection_id)
        if window is not None:
            window.received_count += 1

    def network_stats(self, connection_id: str) -> Optional[NetworkStats]:
        window = self._windows.get(connection_id)
        if window is None:
            return None
        latency = self.average_latency(connection_id)
        jitter = self.jitter(connection_id)
        now = time.time()
        return NetworkStats(
            latency=latency,
            jitter=jitter,
            packetLoss=0,
            connectionQuality=health_label(latency, jitter),
            packetsSent=window.sent_count,
            packetsReceived=window.received_count,
            totalMeasurements=len(window.samples),
            connectionSeconds=now - window.connection_start,
            timestamp=now * 1000,
        )
