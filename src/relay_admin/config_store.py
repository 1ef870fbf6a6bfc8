"""リレー設定ファイル (mediamtx.yml) の読み書き.

読み取り → 書き込みは原子的ではない（後勝ち）。
書き込み自体は 1 プロセス内でロックにより直列化する。
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from relay_admin.codec import find_push_target, join_command, split_command
from relay_admin.errors import DuplicateStreamError, StreamNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class PathConfig:
    """1 つの path の設定.

    Attributes:
        name: path 名
        vector: runOnReady の引数ベクタ
        source: 入力ソース URL
        restart: runOnReadyRestart
    """

    name: str
    vector: list[str] = field(default_factory=list)
    source: str | None = None
    restart: bool = False


class ConfigStore:
    """YAML ファイルに保存されたリレー設定.

    Usage:
        store = ConfigStore("/mediamtx.yml")
        cfg = store.read_path_config("cam1")
        store.write_path_config("cam1", new_vector)
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        """設定全体を読み込む.

        Raises:
            FileNotFoundError: ファイルが無い場合
            ValueError: YAML として読めない、またはトップレベルがマッピングでない場合
        """
        with open(self._path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"{self._path} is not valid YAML: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"{self._path} does not contain a mapping")
        return data

    def save(self, data: dict[str, Any]) -> None:
        """設定全体を書き込む."""
        with self._lock:
            self._write(data)

    def path_names(self) -> list[str]:
        return list(self._paths(self.load()))

    def list_cameras(self) -> list[dict[str, Any]]:
        """カメラ (path) 一覧 (ダッシュボード形式)."""
        cameras = []
        for name, entry in self._paths(self.load()).items():
            entry = entry or {}
            run_on_ready = entry.get("runOnReady") or ""
            cameras.append(
                {
                    "name": name,
                    "rtspUrl": entry.get("source"),
                    "rtmpUrl": find_push_target(split_command(run_on_ready)),
                    **entry,
                }
            )
        return cameras

    def read_path_config(self, name: str) -> PathConfig:
        """path の設定を読む.

        Raises:
            StreamNotFoundError: path が存在しない場合
        """
        return self._to_path_config(name, self._entry(self.load(), name))

    def path_configs(self) -> dict[str, PathConfig]:
        """全 path の設定 (1 回の読み込みで取得)."""
        return {
            name: self._to_path_config(name, entry or {})
            for name, entry in self._paths(self.load()).items()
        }

    def write_path_config(
        self,
        name: str,
        vector: list[str],
        *,
        source: str | None = None,
        restart: bool | None = None,
    ) -> None:
        """path の起動コマンド (と任意で source / restart) を書き込む.

        Raises:
            StreamNotFoundError: path が存在しない場合
        """
        with self._lock:
            data = self.load()
            entry = self._entry(data, name)
            entry["runOnReady"] = join_command(vector)
            if source is not None:
                entry["source"] = source
            if restart is not None:
                entry["runOnReadyRestart"] = restart
            self._write(data)
        logger.info("Updated relay command for path %s", name)

    def add_path(
        self, name: str, source: str, run_on_ready: str, restart: bool = True
    ) -> dict[str, Any]:
        """path を追加する.

        Raises:
            DuplicateStreamError: 同名の path が既に存在する場合
        """
        with self._lock:
            data = self.load()
            paths = data.get("paths")
            if not isinstance(paths, dict):
                paths = data["paths"] = {}
            if name in paths:
                raise DuplicateStreamError(f"Camera {name} already exists")
            entry = {
                "source": source,
                "runOnReady": run_on_ready,
                "runOnReadyRestart": restart,
            }
            paths[name] = entry
            self._write(data)
        logger.info("Added path %s (source=%s)", name, source)
        return entry

    def remove_path(self, name: str) -> None:
        """path を削除する.

        Raises:
            StreamNotFoundError: path が存在しない場合
        """
        with self._lock:
            data = self.load()
            self._entry(data, name)
            del data["paths"][name]
            self._write(data)
        logger.info("Removed path %s", name)

    def relay_credentials(self) -> tuple[str, str] | None:
        """リレー API の認証情報を設定ファイルから取り出す.

        authInternalUsers の先頭ユーザー、無ければ旧形式の
        paths.all.readUser / readPass。読めなければ None。
        """
        try:
            data = self.load()
        except (OSError, ValueError) as e:
            logger.warning("Cannot read relay credentials from %s: %s", self._path, e)
            return None

        users = data.get("authInternalUsers") or []
        if users and isinstance(users[0], dict) and users[0].get("user"):
            return str(users[0]["user"]), str(users[0].get("pass") or "")

        legacy = self._paths(data).get("all") or {}
        if legacy.get("readUser"):
            return str(legacy["readUser"]), str(legacy.get("readPass") or "")
        return None

    @staticmethod
    def _to_path_config(name: str, entry: dict[str, Any]) -> PathConfig:
        source = entry.get("source")
        return PathConfig(
            name=name,
            vector=split_command(entry.get("runOnReady") or ""),
            source=source if isinstance(source, str) else None,
            restart=bool(entry.get("runOnReadyRestart", False)),
        )

    @staticmethod
    def _paths(data: dict[str, Any]) -> dict[str, Any]:
        paths = data.get("paths")
        return paths if isinstance(paths, dict) else {}

    def _entry(self, data: dict[str, Any], name: str) -> dict[str, Any]:
        paths = self._paths(data)
        if name not in paths:
            raise StreamNotFoundError(name)
        if paths[name] is None:
            paths[name] = {}
        return paths[name]

    def _write(self, data: dict[str, Any]) -> None:
        tmp = self._path.with_name(self._path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)
        tmp.replace(self._path)
