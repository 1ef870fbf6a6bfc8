"""FastAPI application: RTSP→RTMP リレー管理 API.

リレー設定ファイル (mediamtx.yml) の編集と、リレー制御 API から集約した
ストリーム状態をダッシュボード向けに提供する。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from relay_admin.aggregator import StatusAggregator, processing_view
from relay_admin.codec import (
    build_relay_command,
    decode,
    encode,
    find_problems,
    join_command,
)
from relay_admin.config import AdminConfig
from relay_admin.config_store import ConfigStore
from relay_admin.container_logs import ContainerLogReader
from relay_admin.errors import (
    DuplicateStreamError,
    MalformedConfigurationError,
    StatusUnavailableError,
    StreamNotFoundError,
    UpstreamUnavailableError,
)
from relay_admin.relay_client import RelayClient
from relay_admin.restart import RelayRestarter

logger = logging.getLogger(__name__)

# 起動時に一度だけ環境変数から読む
settings = AdminConfig.from_env()
store = ConfigStore(settings.config_file_path)
restarter = RelayRestarter(
    settings.restart_command,
    timeout=settings.restart_timeout,
    settle_seconds=settings.restart_settle_seconds,
)
log_reader = ContainerLogReader()

# lifespan で初期化
relay_client: RelayClient | None = None
aggregator: StatusAggregator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションのライフサイクル管理."""
    global relay_client, aggregator

    logging.getLogger("relay_admin").setLevel(settings.log_level)

    username, password = settings.relay_username, settings.relay_password
    if username is None:
        credentials = store.relay_credentials()
        if credentials:
            username, password = credentials
            logger.info("Using relay API credentials from %s", store.path)
        else:
            logger.warning("No relay API credentials configured")

    relay_client = RelayClient(
        settings.relay_api_url,
        username=username,
        password=password,
        timeout=settings.upstream_timeout,
    )
    aggregator = StatusAggregator(
        relay_client, store, timeout=settings.upstream_timeout
    )
    logger.info(
        "relay-admin starting (config=%s, relay=%s)",
        store.path,
        settings.relay_api_url,
    )
    yield
    logger.info("relay-admin shutting down")
    await relay_client.aclose()


app = FastAPI(
    title="relay-admin",
    description="Configuration and status API for an RTSP-to-RTMP media relay",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _success(message: str, warning: str | None, **extra: Any) -> dict:
    """変更系 API の応答. 再起動失敗は warning として返す."""
    body: dict[str, Any] = {"success": True, "message": message, **extra}
    if warning:
        body["warning"] = warning
    return body


# ============================================================
# ヘルスチェック
# ============================================================


@app.get("/api/healthz")
async def healthz() -> dict:
    """ヘルスチェック."""
    config_ok = store.path.is_file()
    return {
        "status": "healthy" if config_ok else "degraded",
        "config_file": str(store.path),
        "config_readable": config_ok,
        "relay_api": settings.relay_api_url,
        "restart_enabled": restarter.enabled,
    }


# ============================================================
# REST API: 設定ファイル
# ============================================================


@app.get("/api/config")
async def get_config() -> dict:
    """リレー設定全体."""
    try:
        return await asyncio.to_thread(store.load)
    except (OSError, ValueError) as e:
        logger.error("Error reading config file %s: %s", store.path, e)
        return _error(500, "Failed to read configuration file")


@app.post("/api/config")
async def replace_config(config: dict[str, Any] = Body(...)) -> dict:
    """リレー設定全体を置き換える."""
    try:
        await asyncio.to_thread(store.save, config)
    except (OSError, ValueError) as e:
        logger.error("Error writing config file %s: %s", store.path, e)
        return _error(500, "Failed to update configuration file")
    return {"success": True, "message": "Configuration updated successfully"}


# ============================================================
# REST API: カメラ (path) 管理
# ============================================================


class CreateCameraRequest(BaseModel):
    """カメラ追加リクエスト."""

    name: str = Field(min_length=1)
    rtspUrl: str = Field(min_length=1)
    rtmpUrl: str = Field(min_length=1)


class StreamSettingsRequest(BaseModel):
    """エンコード設定の部分更新. 省略した項目は変更しない."""

    resolution: str | None = None
    bitrate: int | str | None = None
    framerate: int | str | None = None
    quality: int | str | None = None
    preset: str | None = None


@app.get("/api/cameras")
async def list_cameras() -> list[dict]:
    """カメラ一覧."""
    try:
        return await asyncio.to_thread(store.list_cameras)
    except FileNotFoundError:
        return []
    except (OSError, ValueError) as e:
        logger.error("Error reading cameras from %s: %s", store.path, e)
        return _error(500, "Failed to get cameras")


@app.post("/api/cameras", status_code=201)
async def create_camera(req: CreateCameraRequest) -> dict:
    """カメラ追加: path を設定に書き込み、リレーを再起動する."""
    command = build_relay_command(req.rtspUrl, req.rtmpUrl)
    try:
        entry = await asyncio.to_thread(
            store.add_path, req.name, req.rtspUrl, command
        )
    except DuplicateStreamError as e:
        return _error(409, str(e))
    except Exception:
        logger.exception("Unexpected error adding camera %s", req.name)
        return _error(500, "Failed to add camera")

    warning = await restarter.restart()
    return _success("Camera added", warning, camera=entry)


@app.delete("/api/cameras/{name}")
async def delete_camera(name: str) -> dict:
    """カメラ削除."""
    try:
        await asyncio.to_thread(store.remove_path, name)
    except StreamNotFoundError:
        return _error(404, "Camera not found")
    except Exception:
        logger.exception("Unexpected error deleting camera %s", name)
        return _error(500, "Failed to delete camera")

    warning = await restarter.restart()
    return _success("Camera deleted", warning)


@app.get("/api/cameras/{name}/stream-settings")
async def get_stream_settings(name: str) -> dict:
    """カメラの現在のエンコード設定."""
    try:
        config = await asyncio.to_thread(store.read_path_config, name)
    except StreamNotFoundError:
        return _error(404, "Camera not found")
    except (OSError, ValueError) as e:
        logger.error("Error reading stream settings for %s: %s", name, e)
        return _error(500, "Failed to get stream settings")

    problems = find_problems(config.vector)
    if problems:
        logger.warning(
            "Relay command for %s is malformed: %s", name, "; ".join(problems)
        )
    return decode(config.vector).to_dict()


def _apply_stream_settings(
    name: str, updates: dict[str, Any]
) -> tuple[list[str], bool]:
    """設定ファイル上のコマンドを更新する. 変化が無ければ書き込まない.

    Returns:
        (更新後のベクタ, 変更があったか)
    """
    config = store.read_path_config(name)
    vector = encode(config.vector, updates)
    if vector == config.vector:
        return vector, False
    store.write_path_config(name, vector)
    return vector, True


@app.put("/api/cameras/{name}/stream-settings")
async def update_stream_settings(name: str, req: StreamSettingsRequest) -> dict:
    """エンコード設定を部分更新し、変更があればリレーを再起動する."""
    try:
        vector, changed = await asyncio.to_thread(
            _apply_stream_settings, name, req.model_dump()
        )
    except StreamNotFoundError:
        return _error(404, "Camera not found")
    except MalformedConfigurationError as e:
        logger.warning("Refusing to update malformed relay command for %s: %s", name, e)
        return _error(
            400, "Relay command is malformed", problems=e.problems
        )
    except ValueError as e:
        return _error(400, str(e))
    except Exception:
        logger.exception("Unexpected error updating stream settings for %s", name)
        return _error(500, "Failed to update stream settings")

    warning = await restarter.restart() if changed else None
    return _success(
        "Stream settings updated" if changed else "Stream settings unchanged",
        warning,
        updatedCommand=join_command(vector),
        settings=decode(vector).to_dict(),
    )


# ============================================================
# REST API: ストリーム状態
# ============================================================


@app.get("/api/status")
async def get_status(path: str | None = None) -> dict:
    """全 path (または 1 path) の統合ステータスとサマリー."""
    try:
        result = await aggregator.aggregate(path)
    except StreamNotFoundError:
        return _error(404, "Stream not found")
    except StatusUnavailableError as e:
        return _error(503, str(e))
    return result.to_dict()


@app.get("/api/streams/{name}/io")
async def get_stream_io(name: str) -> dict:
    """1 path の入出力メトリクス."""
    try:
        result = await aggregator.aggregate(name)
    except StreamNotFoundError:
        return _error(404, "Stream not found")
    except StatusUnavailableError as e:
        return _error(503, str(e))
    return {
        **result.streams[0].to_dict(),
        "warnings": [w.to_dict() for w in result.warnings],
    }


@app.get("/api/streams/{name}/processing")
async def get_stream_processing(name: str) -> dict:
    """1 path の起動コマンドと送出先の状態."""
    try:
        result = await aggregator.aggregate(name)
    except StreamNotFoundError:
        return _error(404, "Stream not found")
    except StatusUnavailableError as e:
        return _error(503, str(e))
    return {
        **processing_view(result.streams[0]),
        "warnings": [w.to_dict() for w in result.warnings],
    }


@app.get("/api/streams/{name}/status")
async def get_stream_status(name: str) -> dict:
    """リレーが返す path 記述子そのもの."""
    try:
        return await relay_client.get_path(name)
    except StreamNotFoundError:
        return _error(404, "Stream not found")
    except UpstreamUnavailableError as e:
        logger.warning("Error getting stream status for %s: %s", name, e)
        return _error(502, "Failed to get stream status")


@app.get("/api/server/info")
async def get_server_info() -> dict:
    """リレーのグローバル設定."""
    try:
        return await relay_client.get_global_config()
    except UpstreamUnavailableError as e:
        logger.warning("Error getting server info: %s", e)
        return _error(502, "Failed to get server info")


# ============================================================
# REST API: コンテナログ
# ============================================================


@app.get("/api/logs/{container}")
async def get_logs(container: str, lines: int = Query(100, ge=1, le=10000)) -> dict:
    """コンテナログ末尾."""
    try:
        logs = await log_reader.tail(container, lines)
    except ValueError as e:
        return _error(400, str(e))
    except RuntimeError as e:
        logger.error("Error getting logs for %s: %s", container, e)
        return _error(500, f"Failed to get logs for {container}")
    return {"container": container, "logs": logs}
