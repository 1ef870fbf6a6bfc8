"""StatusAggregator のテスト.

リレー API はフェイクに差し替え、マージ・優先順位・推定・縮退をテスト。
"""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from relay_admin.aggregator import (
    StatusAggregator,
    format_efficiency,
    processing_view,
)
from relay_admin.codec import build_relay_command
from relay_admin.config_store import ConfigStore
from relay_admin.errors import (
    StatusUnavailableError,
    StreamNotFoundError,
    UpstreamUnavailableError,
)

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)
TEN_SECONDS_AGO = (NOW - timedelta(seconds=10)).isoformat().replace("+00:00", "Z")

RTMP_URL = "rtmp://live.example.com/app/key"
COMMAND = build_relay_command("rtsp://10.0.0.5/stream", RTMP_URL)


class FakeRelay:
    """list_* を固定値で返すフェイク. 値に例外を渡すとそれを送出する."""

    def __init__(self, paths=(), rtsp=(), rtmp=(), delay: float = 0.0):
        self._data = {"paths": paths, "rtsp": rtsp, "rtmp": rtmp}
        self._delay = delay
        self.calls: list[str] = []

    async def _get(self, key):
        self.calls.append(key)
        if self._delay:
            await asyncio.sleep(self._delay)
        value = self._data[key]
        if isinstance(value, Exception):
            raise value
        return list(value)

    async def list_paths(self):
        return await self._get("paths")

    async def list_rtsp_sessions(self):
        return await self._get("rtsp")

    async def list_rtmp_sessions(self):
        return await self._get("rtmp")


def _path(name="cam1", ready=True, command=COMMAND, **extra):
    path = {"name": name, "ready": ready, "lastActivity": TEN_SECONDS_AGO, **extra}
    if command is not None:
        path["runOnReady"] = command
    return path


def _aggregator(relay, **kwargs):
    return StatusAggregator(relay, clock=lambda: NOW, **kwargs)


# ============================================================
# マージ・優先順位のテスト
# ============================================================


class TestMerge:
    """入出力メトリクスのマージ."""

    @pytest.mark.asyncio
    async def test_input_sessions_summed(self):
        relay = FakeRelay(
            paths=[_path()],
            rtsp=[
                {"path": "cam1", "bytesReceived": 1000, "bitrate": 600},
                {"path": "cam1", "bytesReceived": 500, "bitrate": 400},
                {"path": "other", "bytesReceived": 99999, "bitrate": 1},
            ],
        )
        result = await _aggregator(relay).aggregate("cam1")
        stream = result.streams[0]
        assert stream.input.sessions == 2
        assert stream.input.bytes_received == 1500
        assert stream.input.bitrate == 1000
        assert stream.input.connected is True
        assert stream.input.protocol == "RTSP"

    @pytest.mark.asyncio
    async def test_measured_output_takes_precedence(self):
        """RTMP セッションがあれば推定しない (送出先 URL があっても)."""
        relay = FakeRelay(
            paths=[_path()],
            rtsp=[{"path": "cam1", "bytesReceived": 2000, "bitrate": 1000}],
            rtmp=[
                {"path": "cam1", "bytesSent": 700, "bitrate": 300},
                {"path": "cam1", "bytesSent": 300, "bitrate": 200},
            ],
        )
        result = await _aggregator(relay).aggregate("cam1")
        stream = result.streams[0]
        assert stream.output.estimated is False
        assert stream.output.connected is True
        assert stream.output.sessions == 2
        assert stream.output.bytes_sent == 1000
        assert stream.output.bitrate == 500
        assert stream.output.url == RTMP_URL
        assert stream.metrics.efficiency == "50.0%"

    @pytest.mark.asyncio
    async def test_estimated_output(self):
        """10 秒前から動作中、入力 1000kbps → 出力 800kbps / 1,000,000 bytes."""
        relay = FakeRelay(
            paths=[_path()],
            rtsp=[{"path": "cam1", "bytesReceived": 0, "bitrate": 1000}],
        )
        result = await _aggregator(relay).aggregate("cam1")
        stream = result.streams[0]
        assert stream.output.estimated is True
        assert stream.metrics.output_estimated is True
        assert stream.output.connected is True
        assert stream.output.bitrate == 800
        assert stream.output.bytes_sent == 1_000_000
        assert stream.metrics.output_bitrate == 800

    @pytest.mark.asyncio
    async def test_estimate_uses_explicit_target_bitrate(self):
        command = f"ffmpeg -i rtsp://cam -c:v libx264 -b:v 1200k -f flv {RTMP_URL}"
        relay = FakeRelay(
            paths=[_path(command=command)],
            rtsp=[{"path": "cam1", "bitrate": 5000}],
        )
        stream = (await _aggregator(relay).aggregate("cam1")).streams[0]
        assert stream.output.bitrate == 1200
        assert stream.output.bytes_sent == 1_500_000

    @pytest.mark.asyncio
    async def test_not_ready_path_is_not_estimated(self):
        relay = FakeRelay(
            paths=[_path(ready=False)],
            rtsp=[{"path": "cam1", "bitrate": 1000}],
        )
        stream = (await _aggregator(relay).aggregate("cam1")).streams[0]
        assert stream.output.estimated is False
        assert stream.output.connected is False
        assert stream.output.bytes_sent == 0
        assert stream.output.url == RTMP_URL
        assert stream.ffmpeg.status == "stopped"

    @pytest.mark.asyncio
    async def test_no_push_target_no_output(self):
        relay = FakeRelay(
            paths=[_path(command="ffmpeg -i rtsp://cam -f null -")],
            rtsp=[{"path": "cam1", "bitrate": 1000}],
        )
        stream = (await _aggregator(relay).aggregate("cam1")).streams[0]
        assert stream.output.url is None
        assert stream.output.connected is False
        assert stream.output.bitrate == 0

    @pytest.mark.asyncio
    async def test_nanosecond_timestamp(self):
        stamp = (NOW - timedelta(seconds=4)).strftime("%Y-%m-%dT%H:%M:%S.123456789Z")
        relay = FakeRelay(
            paths=[_path(lastActivity=stamp)],
            rtsp=[{"path": "cam1", "bitrate": 100}],
        )
        stream = (await _aggregator(relay).aggregate("cam1")).streams[0]
        # 80kbps × 3.876544s
        assert stream.output.bytes_sent == 38765

    @pytest.mark.asyncio
    async def test_command_from_config_store(self, tmp_path):
        """path 記述子に runOnReady が無ければ設定ファイルから読む."""
        store = ConfigStore(tmp_path / "mediamtx.yml")
        store.save({"paths": {}})
        store.add_path("cam1", "rtsp://10.0.0.5/stream", COMMAND, restart=True)

        relay = FakeRelay(
            paths=[_path(command=None)],
            rtsp=[{"path": "cam1", "bitrate": 1000}],
        )
        stream = (await _aggregator(relay, store=store).aggregate("cam1")).streams[0]
        assert stream.source == "rtsp://10.0.0.5/stream"
        assert stream.input.url == "rtsp://10.0.0.5/stream"
        assert stream.ffmpeg.command == COMMAND
        assert stream.ffmpeg.restart_policy == "enabled"
        assert stream.output.estimated is True

    @pytest.mark.asyncio
    async def test_config_store_read_off_event_loop(self, tmp_path):
        """設定ファイルの読み込みはイベントループのスレッドで行わない."""
        store = ConfigStore(tmp_path / "mediamtx.yml")
        store.save({"paths": {}})
        threads = []
        original = store.path_configs

        def path_configs():
            threads.append(threading.get_ident())
            return original()

        store.path_configs = path_configs
        await _aggregator(FakeRelay(paths=[_path()]), store=store).aggregate()
        assert len(threads) == 1
        assert threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_dashboard_shape(self):
        relay = FakeRelay(paths=[_path()])
        data = (await _aggregator(relay).aggregate("cam1")).streams[0].to_dict()
        assert set(data["input"]) >= {
            "connected", "protocol", "url", "sessions", "bytesReceived", "bitrate",
        }
        assert set(data["output"]) >= {
            "connected", "protocol", "url", "sessions", "bytesSent", "bitrate",
        }
        assert set(data["metrics"]) >= {
            "bytesReceived", "bytesSent", "totalBytes",
            "inputBitrate", "outputBitrate", "efficiency",
        }
        assert data["ffmpeg"]["status"] == "running"
        assert data["lastActivity"] == TEN_SECONDS_AGO


# ============================================================
# フィルタ・エラーのテスト
# ============================================================


class TestFilterAndErrors:
    """path 指定・NotFound・上流障害."""

    @pytest.mark.asyncio
    async def test_all_paths(self):
        relay = FakeRelay(paths=[_path("cam1"), _path("cam2", ready=False)])
        for path_filter in (None, "all"):
            result = await _aggregator(relay).aggregate(path_filter)
            assert [s.name for s in result.streams] == ["cam1", "cam2"]

    @pytest.mark.asyncio
    async def test_not_found(self):
        relay = FakeRelay(paths=[_path("cam1")])
        with pytest.raises(StreamNotFoundError):
            await _aggregator(relay).aggregate("ghost-cam")

    @pytest.mark.asyncio
    async def test_session_failure_degrades(self):
        relay = FakeRelay(
            paths=[_path()],
            rtsp=UpstreamUnavailableError("GET /v3/rtspsessions/list returned 500"),
            rtmp=[{"path": "cam1", "bytesSent": 10, "bitrate": 1}],
        )
        result = await _aggregator(relay).aggregate("cam1")
        assert len(result.streams) == 1
        assert result.streams[0].input.sessions == 0
        assert result.streams[0].output.bytes_sent == 10
        assert [w.collection for w in result.warnings] == ["rtspSessions"]

    @pytest.mark.asyncio
    async def test_timeout_degrades(self):
        relay = FakeRelay(paths=[_path()], delay=0.5)
        result = await _aggregator(relay, timeout=0.05).aggregate()
        assert result.streams == []
        assert {w.collection for w in result.warnings} == {
            "paths", "rtspSessions", "rtmpSessions",
        }
        assert "timed out" in result.warnings[0].message

    @pytest.mark.asyncio
    async def test_paths_failure_for_named_stream(self):
        """path 一覧が取れない場合、NotFound ではなく判定不能."""
        relay = FakeRelay(paths=ConnectionRefusedError("refused"))
        with pytest.raises(StatusUnavailableError):
            await _aggregator(relay).aggregate("cam1")

    @pytest.mark.asyncio
    async def test_total_failure_for_all_is_empty_with_warnings(self):
        error = UpstreamUnavailableError("down")
        relay = FakeRelay(paths=error, rtsp=error, rtmp=error)
        result = await _aggregator(relay).aggregate()
        assert result.streams == []
        assert len(result.warnings) == 3
        assert result.summary["totalPaths"] == 0

    @pytest.mark.asyncio
    async def test_fetches_run_concurrently(self):
        relay = FakeRelay(paths=[_path()], delay=0.2)
        loop = asyncio.get_running_loop()
        start = loop.time()
        await _aggregator(relay).aggregate()
        assert loop.time() - start < 0.5
        assert sorted(relay.calls) == ["paths", "rtmp", "rtsp"]

    @pytest.mark.asyncio
    async def test_unreadable_config_store_is_a_warning(self, tmp_path):
        relay = FakeRelay(paths=[_path()])
        store = ConfigStore(tmp_path / "missing.yml")
        result = await _aggregator(relay, store=store).aggregate()
        assert len(result.streams) == 1
        assert [w.collection for w in result.warnings] == ["config"]


# ============================================================
# サマリー・表示のテスト
# ============================================================


class TestSummary:
    """サマリー集計と processing 表示."""

    @pytest.mark.asyncio
    async def test_summary(self):
        relay = FakeRelay(
            paths=[_path("cam1"), _path("cam2"), _path("cam3", ready=False)],
            rtsp=[
                {"path": "cam1", "bytesReceived": 3000, "bitrate": 0},
                {"path": "cam2", "bytesReceived": 1000, "bitrate": 0},
            ],
            rtmp=[{"path": "cam1", "bytesSent": 1000, "bitrate": 0}],
        )
        summary = (await _aggregator(relay).aggregate()).summary
        assert summary["totalPaths"] == 3
        assert summary["activeStreams"] == 2
        assert summary["totalRTSPSessions"] == 2
        assert summary["totalRTMPSessions"] == 1
        assert summary["rtmpOutputs"] == 3
        # cam2 は推定 (入力ビットレート 0 → 出力 0)
        assert summary["estimatedOutputs"] == 1
        assert summary["bytesReceived"] == 4000
        assert summary["bytesSent"] == 1000
        assert summary["totalBytes"] == 5000
        assert summary["efficiency"] == "25.0%"

    def test_format_efficiency(self):
        assert format_efficiency(0, 0) == "0.0%"
        assert format_efficiency(1, 3) == "33.3%"
        assert format_efficiency(2, 1) == "200.0%"

    @pytest.mark.asyncio
    async def test_processing_view(self):
        relay = FakeRelay(paths=[_path()])
        stream = (await _aggregator(relay).aggregate("cam1")).streams[0]
        view = processing_view(stream)
        assert view["rtmpOutput"] == {
            "url": RTMP_URL,
            "status": "active",
            "target": "live.example.com/app/key",
        }
        assert view["transferStatus"] == {
            "inputConnected": True,
            "outputConnected": True,
            "processingActive": True,
        }
        assert view["ffmpegProcess"]["command"] == COMMAND
