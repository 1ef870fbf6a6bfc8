"""ストリーム状態の集約.

リレーの 3 つのコレクション (path / RTSP セッション / RTMP セッション) を
並行取得し、path ごとの統合ステータスにマージする。

出力メトリクスの優先順位:
  1. path に一致する RTMP セッションがあれば、その実測値
  2. 無く、起動コマンドに送出先 URL があれば推定値 (estimated=True)
  3. どちらも無ければ 0
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

from relay_admin.codec import (
    find_push_target,
    find_target_bitrate,
    join_command,
    split_command,
)
from relay_admin.errors import (
    StatusUnavailableError,
    StreamNotFoundError,
    UpstreamUnavailableError,
)

if TYPE_CHECKING:
    from relay_admin.config_store import ConfigStore, PathConfig

logger = logging.getLogger(__name__)

ALL_PATHS = "all"

# 実測値が無い場合の 出力 / 入力 ビットレート比
COMPRESSION_RATIO = 0.8

PATHS = "paths"
RTSP_SESSIONS = "rtspSessions"
RTMP_SESSIONS = "rtmpSessions"

# RFC 3339 の小数秒を datetime が扱える 6 桁に丸める
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class RelayAPI(Protocol):
    async def list_paths(self) -> list[dict[str, Any]]: ...

    async def list_rtsp_sessions(self) -> list[dict[str, Any]]: ...

    async def list_rtmp_sessions(self) -> list[dict[str, Any]]: ...


def format_efficiency(sent: int, received: int) -> str:
    """送信 / 受信 の百分率 (小数 1 桁)."""
    if received <= 0:
        return "0.0%"
    return f"{sent / received * 100:.1f}%"


@dataclass
class UpstreamWarning:
    """取得に失敗したコレクション."""

    collection: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"collection": self.collection, "message": self.message}


@dataclass
class InputStatus:
    connected: bool = False
    protocol: str = "RTSP"
    url: str | None = None
    sessions: int = 0
    bytes_received: int = 0
    bitrate: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "protocol": self.protocol,
            "url": self.url,
            "sessions": self.sessions,
            "bytesReceived": self.bytes_received,
            "bitrate": self.bitrate,
        }


@dataclass
class OutputStatus:
    """出力側の状態.

    estimated=True の場合、connected は path の ready を写しただけで
    送出先への到達を確認したものではない。
    """

    connected: bool = False
    protocol: str = "RTMP"
    url: str | None = None
    sessions: int = 0
    bytes_sent: int = 0
    bitrate: int = 0
    estimated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "protocol": self.protocol,
            "url": self.url,
            "sessions": self.sessions,
            "bytesSent": self.bytes_sent,
            "bitrate": self.bitrate,
            "estimated": self.estimated,
        }


@dataclass
class FfmpegStatus:
    command: str | None = None
    status: str = "stopped"
    restart_policy: str = "disabled"

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "status": self.status,
            "restartPolicy": self.restart_policy,
        }


@dataclass
class StreamMetrics:
    bytes_received: int = 0
    bytes_sent: int = 0
    input_bitrate: int = 0
    output_bitrate: int = 0
    output_estimated: bool = False

    @property
    def total_bytes(self) -> int:
        return self.bytes_received + self.bytes_sent

    @property
    def efficiency(self) -> str:
        return format_efficiency(self.bytes_sent, self.bytes_received)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bytesReceived": self.bytes_received,
            "bytesSent": self.bytes_sent,
            "totalBytes": self.total_bytes,
            "inputBitrate": self.input_bitrate,
            "outputBitrate": self.output_bitrate,
            "efficiency": self.efficiency,
            "outputEstimated": self.output_estimated,
        }


@dataclass
class UnifiedStreamStatus:
    """1 path の統合ステータス. リクエストごとに作り直し、保存しない."""

    name: str
    source: str | None
    ready: bool
    last_activity: str | None
    input: InputStatus
    output: OutputStatus
    ffmpeg: FfmpegStatus
    metrics: StreamMetrics
    rtsp_sessions: list[dict[str, Any]] = field(default_factory=list)
    rtmp_sessions: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "source": self.source,
            "ready": self.ready,
            "lastActivity": self.last_activity,
            "input": self.input.to_dict(),
            "output": self.output.to_dict(),
            "ffmpeg": self.ffmpeg.to_dict(),
            "metrics": self.metrics.to_dict(),
            "rtspSessions": self.rtsp_sessions,
            "rtmpSessions": self.rtmp_sessions,
        }


@dataclass
class AggregateResult:
    streams: list[UnifiedStreamStatus]
    summary: dict[str, Any]
    warnings: list[UpstreamWarning] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "streams": [s.to_dict() for s in self.streams],
            "summary": self.summary,
            "warnings": [w.to_dict() for w in self.warnings],
        }


def processing_view(status: UnifiedStreamStatus) -> dict[str, Any]:
    """起動コマンドと送出先の状態 (ダッシュボードの processing 表示用)."""
    url = status.output.url
    return {
        "name": status.name,
        "source": status.source,
        "ready": status.ready,
        "ffmpegProcess": status.ffmpeg.to_dict(),
        "rtmpOutput": {
            "url": url,
            "status": "active" if url and status.ready else "inactive",
            "target": url.split("://", 1)[1] if url else None,
        },
        "transferStatus": {
            "inputConnected": status.ready,
            "outputConnected": status.output.connected,
            "processingActive": status.ready and bool(status.ffmpeg.command),
        },
    }


class StatusAggregator:
    """リレーの 3 コレクションを統合ステータスに集約する.

    Usage:
        aggregator = StatusAggregator(relay_client, store, timeout=5.0)
        result = await aggregator.aggregate()         # 全 path
        result = await aggregator.aggregate("cam1")   # 1 path
    """

    def __init__(
        self,
        relay: RelayAPI,
        store: ConfigStore | None = None,
        *,
        timeout: float = 5.0,
        clock: Callable[[], datetime] | None = None,
    ):
        """StatusAggregator を初期化する.

        Args:
            relay: リレー API (list_paths / list_rtsp_sessions / list_rtmp_sessions)
            store: 起動コマンドの参照先 (path 記述子に runOnReady が無い場合)
            timeout: コレクション 1 つあたりの取得タイムアウト (秒)
            clock: 現在時刻 (UTC aware) を返す関数
        """
        self._relay = relay
        self._store = store
        self._timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def aggregate(self, path_filter: str | None = None) -> AggregateResult:
        """統合ステータスを組み立てる.

        Args:
            path_filter: path 名 (None または "all" で全 path)

        Returns:
            AggregateResult (取得失敗したコレクションは warnings に入る)

        Raises:
            StreamNotFoundError: 指定 path が path 一覧に無い場合
            StatusUnavailableError: 指定 path について path 一覧が取得できない場合
        """
        named = path_filter not in (None, "", ALL_PATHS)

        # 3 コレクションを並行取得 (失敗は個別に捕捉し、全部揃うまで待つ)
        (paths, paths_warning), (inputs, inputs_warning), (outputs, outputs_warning) = (
            await asyncio.gather(
                self._fetch(PATHS, self._relay.list_paths),
                self._fetch(RTSP_SESSIONS, self._relay.list_rtsp_sessions),
                self._fetch(RTMP_SESSIONS, self._relay.list_rtmp_sessions),
            )
        )
        warnings = [
            w for w in (paths_warning, inputs_warning, outputs_warning) if w is not None
        ]

        if named:
            if paths_warning is not None:
                raise StatusUnavailableError(
                    f"Cannot determine status of {path_filter}: "
                    f"{paths_warning.message}"
                )
            paths = [p for p in paths if p.get("name") == path_filter]
            if not paths:
                raise StreamNotFoundError(path_filter)
        elif len(warnings) == 3:
            logger.error("All relay collections unavailable, returning empty status")

        configs = await self._path_configs(warnings)
        now = self._clock()
        streams = [
            self._merge(path, inputs, outputs, configs.get(path.get("name", "")), now)
            for path in paths
        ]
        return AggregateResult(
            streams=streams,
            summary=self._summarize(streams),
            warnings=warnings,
        )

    async def _fetch(
        self,
        collection: str,
        call: Callable[[], Awaitable[list[dict[str, Any]]]],
    ) -> tuple[list[dict[str, Any]], UpstreamWarning | None]:
        """コレクションを 1 つ取得する. 失敗・タイムアウトは空 + 警告."""
        try:
            items = await asyncio.wait_for(call(), timeout=self._timeout)
        except asyncio.TimeoutError:
            message = f"timed out after {self._timeout:.1f}s"
        except (UpstreamUnavailableError, OSError) as e:
            message = str(e) or type(e).__name__
        else:
            return [item for item in items if isinstance(item, dict)], None

        logger.warning("Relay collection %s unavailable: %s", collection, message)
        return [], UpstreamWarning(collection, message)

    async def _path_configs(
        self, warnings: list[UpstreamWarning]
    ) -> dict[str, PathConfig]:
        """設定ファイルの path 設定 (ファイル読み込みはスレッドで行う)."""
        if self._store is None:
            return {}
        try:
            return await asyncio.to_thread(self._store.path_configs)
        except (OSError, ValueError) as e:
            logger.warning("Relay configuration unavailable: %s", e)
            warnings.append(UpstreamWarning("config", str(e)))
            return {}

    def _merge(
        self,
        path: dict[str, Any],
        rtsp_sessions: list[dict[str, Any]],
        rtmp_sessions: list[dict[str, Any]],
        config: PathConfig | None,
        now: datetime,
    ) -> UnifiedStreamStatus:
        name = str(path.get("name", ""))
        ready = bool(path.get("ready"))

        command = path.get("runOnReady")
        if isinstance(command, str) and command:
            vector = split_command(command)
        else:
            vector = list(config.vector) if config else []

        source = config.source if config and config.source else None
        if source is None and isinstance(path.get("source"), str):
            source = path["source"]

        restart = path.get("runOnReadyRestart")
        if restart is None:
            restart = config.restart if config else False

        matched_inputs = [s for s in rtsp_sessions if s.get("path") == name]
        matched_outputs = [s for s in rtmp_sessions if s.get("path") == name]

        bytes_received = _sum(matched_inputs, "bytesReceived")
        input_bitrate = _sum(matched_inputs, "bitrate")

        push_target = find_push_target(vector) if vector else None
        estimated = False
        if matched_outputs:
            # 実測値が常に優先
            output_connected = True
            bytes_sent = _sum(matched_outputs, "bytesSent")
            output_bitrate = _sum(matched_outputs, "bitrate")
        elif push_target and ready:
            # 外部送出先は計測できないため推定
            estimated = True
            output_connected = ready
            target = find_target_bitrate(vector)
            if target is not None:
                output_bitrate = target
            else:
                output_bitrate = math.floor(input_bitrate * COMPRESSION_RATIO)
            elapsed = _elapsed_seconds(path, now)
            bytes_sent = math.floor(output_bitrate * 1000 / 8 * elapsed)
        else:
            output_connected = False
            bytes_sent = 0
            output_bitrate = 0

        return UnifiedStreamStatus(
            name=name,
            source=source,
            ready=ready,
            last_activity=_last_activity(path),
            input=InputStatus(
                connected=ready,
                url=source,
                sessions=len(matched_inputs),
                bytes_received=bytes_received,
                bitrate=input_bitrate,
            ),
            output=OutputStatus(
                connected=output_connected,
                url=push_target,
                sessions=len(matched_outputs),
                bytes_sent=bytes_sent,
                bitrate=output_bitrate,
                estimated=estimated,
            ),
            ffmpeg=FfmpegStatus(
                command=join_command(vector) if vector else None,
                status="running" if ready else "stopped",
                restart_policy="enabled" if restart else "disabled",
            ),
            metrics=StreamMetrics(
                bytes_received=bytes_received,
                bytes_sent=bytes_sent,
                input_bitrate=input_bitrate,
                output_bitrate=output_bitrate,
                output_estimated=estimated,
            ),
            rtsp_sessions=matched_inputs,
            rtmp_sessions=matched_outputs,
        )

    @staticmethod
    def _summarize(streams: list[UnifiedStreamStatus]) -> dict[str, Any]:
        received = sum(s.metrics.bytes_received for s in streams)
        sent = sum(s.metrics.bytes_sent for s in streams)
        return {
            "totalPaths": len(streams),
            "activeStreams": sum(1 for s in streams if s.ready),
            "totalRTSPSessions": sum(s.input.sessions for s in streams),
            "totalRTMPSessions": sum(s.output.sessions for s in streams),
            "rtmpOutputs": sum(1 for s in streams if s.output.url),
            "estimatedOutputs": sum(1 for s in streams if s.output.estimated),
            "bytesReceived": received,
            "bytesSent": sent,
            "totalBytes": received + sent,
            "efficiency": format_efficiency(sent, received),
        }


def _sum(items: list[dict[str, Any]], key: str) -> int:
    total = 0
    for item in items:
        value = item.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            total += int(value)
    return total


def _last_activity(path: dict[str, Any]) -> str | None:
    value = path.get("lastActivity") or path.get("readyTime")
    return value if isinstance(value, str) else None


def _elapsed_seconds(path: dict[str, Any], now: datetime) -> float:
    """最終アクティビティからの経過秒数 (不明なら 0)."""
    value = _last_activity(path)
    if not value:
        return 0.0
    text = _FRACTION_RE.sub(r"\1", value)
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        started = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable activity timestamp %r for %s", value, path.get("name"))
        return 0.0
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return max(0.0, (now - started).total_seconds())
