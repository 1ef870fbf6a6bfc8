"""管理 API の設定."""

import os
import shlex
from dataclasses import dataclass


@dataclass
class AdminConfig:
    """relay-admin の実行時設定.

    プロセス起動時に一度だけ環境変数から組み立て、各コンポーネントに渡す。

    Attributes:
        config_file_path: リレー設定ファイル (mediamtx.yml) のパス
        relay_api_url: リレー制御 API のベース URL
        relay_username: リレー API の Basic 認証ユーザー (None なら設定ファイルから)
        relay_password: リレー API の Basic 認証パスワード
        upstream_timeout: 上流 API 呼び出し 1 回あたりのタイムアウト (秒)
        restart_command: 設定変更後に実行する再起動コマンド (空なら無効)
        restart_timeout: 再起動コマンドのタイムアウト (秒)
        restart_settle_seconds: 再起動成功後の起動待ち (秒)
        cors_origins: 許可する CORS オリジン
        log_level: relay_admin ロガーのレベル
    """

    config_file_path: str = "../mediamtx.yml"
    relay_api_url: str = "http://mediamtx:9997"
    relay_username: str | None = None
    relay_password: str | None = None
    upstream_timeout: float = 5.0
    restart_command: tuple[str, ...] = ("docker", "restart", "mediamtx")
    restart_timeout: float = 30.0
    restart_settle_seconds: float = 5.0
    cors_origins: tuple[str, ...] = ("http://localhost:5173",)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "AdminConfig":
        """環境変数から設定を組み立てる.

        Args:
            environ: 参照する環境 (省略時は os.environ)

        Raises:
            ValueError: 数値項目が数値として読めない場合
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        restart = env.get("RESTART_COMMAND")
        origins = env.get("CORS_ORIGIN")
        return cls(
            config_file_path=env.get("CONFIG_FILE_PATH", defaults.config_file_path),
            relay_api_url=env.get("MEDIAMTX_API_URL", defaults.relay_api_url),
            relay_username=env.get("MEDIAMTX_API_USER") or None,
            relay_password=env.get("MEDIAMTX_API_PASS") or None,
            upstream_timeout=float(
                env.get("UPSTREAM_TIMEOUT", defaults.upstream_timeout)
            ),
            restart_command=(
                tuple(shlex.split(restart))
                if restart is not None
                else defaults.restart_command
            ),
            restart_timeout=float(env.get("RESTART_TIMEOUT", defaults.restart_timeout)),
            restart_settle_seconds=float(
                env.get("RESTART_SETTLE_SECONDS", defaults.restart_settle_seconds)
            ),
            cors_origins=(
                tuple(o.strip() for o in origins.split(",") if o.strip())
                if origins is not None
                else defaults.cors_origins
            ),
            log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
        )
