"""relay-admin: RTSP→RTMP リレー (MediaMTX) の管理 API."""

from relay_admin.aggregator import AggregateResult, StatusAggregator, UnifiedStreamStatus
from relay_admin.codec import EncodingSettings, decode, encode
from relay_admin.config import AdminConfig
from relay_admin.config_store import ConfigStore, PathConfig
from relay_admin.container_logs import ContainerLogReader
from relay_admin.relay_client import RelayClient
from relay_admin.restart import RelayRestarter

__all__ = [
    "AdminConfig",
    "AggregateResult",
    "ConfigStore",
    "ContainerLogReader",
    "EncodingSettings",
    "PathConfig",
    "RelayClient",
    "RelayRestarter",
    "StatusAggregator",
    "UnifiedStreamStatus",
    "decode",
    "encode",
]
