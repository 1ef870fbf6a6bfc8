"""設定変更後のリレー再起動.

再起動の失敗は設定変更の失敗にしない。呼び出し側には警告文字列で返す。
"""

import asyncio
import logging
from collections.abc import Sequence

logger = logging.getLogger(__name__)


class RelayRestarter:
    """リレープロセス (コンテナ) を再起動する.

    Usage:
        restarter = RelayRestarter(["docker", "restart", "mediamtx"])
        warning = await restarter.restart()
        if warning:
            ...  # 設定は保存済み、再起動だけ失敗
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        timeout: float = 30.0,
        settle_seconds: float = 5.0,
    ):
        self._command = list(command)
        self._timeout = timeout
        self._settle = settle_seconds

    @property
    def enabled(self) -> bool:
        return bool(self._command)

    async def restart(self) -> str | None:
        """再起動コマンドを実行する.

        Returns:
            成功時は None、失敗時は警告メッセージ
        """
        if not self._command:
            return "Relay restart is disabled; changes apply on next relay restart"

        logger.info("Restarting relay: %s", " ".join(self._command))
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("Relay restart could not be started: %s", e)
            return self._warning(str(e))

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Relay restart did not finish in %.1fs, killing (PID=%d)",
                self._timeout,
                proc.pid,
            )
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return self._warning(f"timed out after {self._timeout:.0f}s")

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            logger.warning(
                "Relay restart failed (exit=%d): %s", proc.returncode, detail
            )
            return self._warning(detail or f"exit code {proc.returncode}")

        logger.info(
            "Relay restarted: %s",
            stdout.decode("utf-8", errors="replace").strip(),
        )
        # リレーの起動待ち
        if self._settle > 0:
            await asyncio.sleep(self._settle)
        return None

    def _warning(self, detail: str) -> str:
        return (
            f"Configuration saved but relay restart failed ({detail}). "
            f"Restart manually: {' '.join(self._command)}"
        )
