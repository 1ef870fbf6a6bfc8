"""コンテナログの取得."""

import asyncio
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

DEFAULT_CONTAINERS = ("mediamtx", "rtsp-api", "rtsp-ui")


def classify_level(line: str) -> str:
    """ログ行のキーワードからレベルを推定する (後勝ち: error < warning < debug)."""
    level = "info"
    if "ERROR" in line or "error" in line:
        level = "error"
    if "WARN" in line or "warn" in line:
        level = "warning"
    if "DEBUG" in line or "debug" in line:
        level = "debug"
    return level


class ContainerLogReader:
    """`docker logs --tail` でコンテナログ末尾を読む."""

    def __init__(
        self,
        allowed: tuple[str, ...] = DEFAULT_CONTAINERS,
        *,
        timeout: float = 10.0,
    ):
        self._allowed = allowed
        self._timeout = timeout

    async def tail(self, container: str, lines: int = 100) -> list[dict[str, str]]:
        """ログ末尾を取得する.

        Args:
            container: コンテナ名 (許可リストにあるもの)
            lines: 取得行数

        Returns:
            {timestamp, message, level} のリスト

        Raises:
            ValueError: 許可されていないコンテナ名、または lines が不正な場合
            RuntimeError: docker logs の実行に失敗した場合
        """
        if container not in self._allowed:
            raise ValueError(f"Invalid container name: {container}")
        if lines <= 0:
            raise ValueError(f"lines must be positive, got {lines}")

        try:
            proc = await asyncio.create_subprocess_exec(
                "docker",
                "logs",
                "--tail",
                str(lines),
                container,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise RuntimeError(f"Failed to run docker logs: {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise RuntimeError(f"docker logs for {container} timed out")

        text = stdout.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            logger.error(
                "docker logs failed for %s (exit=%d): %s",
                container,
                proc.returncode,
                text.strip(),
            )
            raise RuntimeError(f"Failed to get logs for {container}")

        # docker logs はタイムスタンプを付けないため取得時刻で代用
        now = datetime.now(timezone.utc).isoformat()
        return [
            {"timestamp": now, "message": line, "level": classify_level(line)}
            for line in text.splitlines()
        ]
