"""リレー起動コマンド (FFmpeg 引数ベクタ) ⇔ エンコード設定の変換.

mediamtx.yml の runOnReady に埋め込まれた FFmpeg コマンドを
トークン列として扱い、FLAG_SPECS テーブルに従って読み書きする。
テーブルにないトークンは内容も相対位置もそのまま保持する。
"""

import logging
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from relay_admin.errors import MalformedConfigurationError

logger = logging.getLogger(__name__)

PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
    "placebo",
)

DEFAULT_RESOLUTION = "640:360"
DEFAULT_BITRATE = 400
DEFAULT_FRAMERATE = 15
DEFAULT_QUALITY = 32
DEFAULT_PRESET = "veryfast"

# libx264 の CRF 範囲
MIN_QUALITY = 0
MAX_QUALITY = 51

# フラグが無い場合、新しい (flag, value) はこのトークンの直前に挿入する
ANCHOR_FLAG = "-an"

# 明示的なターゲットビットレート (出力ビットレート推定に使う)
TARGET_BITRATE_FLAG = "-b:v"

_SCALE_RE = re.compile(r"scale=(\d+):(\d+)")
# フィルタチェーン中の scale フィルタ (式の形式を問わない)
_SCALE_FILTER_RE = re.compile(r"(?<![\w-])scale=[^,;]*")
# "-g" "-c:v" などオプションに見えるトークン ("-2" のような負数は除く)
_OPTION_RE = re.compile(r"-[A-Za-z]")
_RESOLUTION_RE = re.compile(r"(\d+)[:x](\d+)")
_KBPS_RE = re.compile(r"(\d+)k?", re.IGNORECASE)
_INT_RE = re.compile(r"\d+")
_PUSH_TARGET_RE = re.compile(r"rtmps?://[^\s\"']+")

_RELAY_COMMAND_TEMPLATE = (
    "/usr/bin/ffmpeg -rtsp_transport tcp -i {rtsp_url} -c:v libx264"
    " -preset veryfast -crf 32 -maxrate 400k -bufsize 800k -g 30 -keyint_min 15"
    " -vf scale=640:360 -r 15 -an -f flv {rtmp_url} -y -reconnect 1"
    " -reconnect_at_eof 1 -reconnect_streamed 1 -reconnect_delay_max 2"
    " -timeout 5000000"
)


@dataclass
class EncodingSettings:
    """エンコード設定.

    ベクタにフラグが無い項目はデフォルト値になる。
    """

    resolution: str = DEFAULT_RESOLUTION
    bitrate: int = DEFAULT_BITRATE
    framerate: int = DEFAULT_FRAMERATE
    quality: int = DEFAULT_QUALITY
    preset: str = DEFAULT_PRESET

    def to_dict(self) -> dict[str, str]:
        """ダッシュボード互換の形式 (値はすべて文字列)."""
        return {
            "resolution": self.resolution,
            "bitrate": str(self.bitrate),
            "framerate": str(self.framerate),
            "quality": str(self.quality),
            "preset": self.preset,
        }


# ============================================================
# 値トークンの読み取り (読めなければ None)
# ============================================================


def _decode_scale(token: str) -> str | None:
    match = _SCALE_RE.search(token)
    if match is None:
        return None
    return f"{match[1]}:{match[2]}"


def _decode_kbps(token: str) -> int | None:
    match = _KBPS_RE.fullmatch(token)
    if match is None:
        return None
    value = int(match[1])
    return value if value > 0 else None


def _decode_positive_int(token: str) -> int | None:
    if _INT_RE.fullmatch(token) is None:
        return None
    value = int(token)
    return value if value > 0 else None


def _decode_int(token: str) -> int | None:
    if _INT_RE.fullmatch(token) is None:
        return None
    return int(token)


def _decode_preset(token: str) -> str | None:
    return token if token in PRESETS else None


# ============================================================
# 値トークンの書き出し (previous: 置き換え前のトークン)
# ============================================================


def _encode_scale(value: str, previous: str | None) -> str:
    if previous is None:
        return f"scale={value}"
    if _SCALE_FILTER_RE.search(previous):
        # フィルタチェーンの他の要素は残す
        return _SCALE_FILTER_RE.sub(f"scale={value}", previous, count=1)
    return f"scale={value},{previous}"


def _encode_kbps(value: int, previous: str | None) -> str:
    return f"{value}k"


def _encode_double_kbps(value: int, previous: str | None) -> str:
    return f"{value * 2}k"


def _encode_plain(value: Any, previous: str | None) -> str:
    return str(value)


# ============================================================
# 更新値の検証・正規化 (不正なら ValueError)
# ============================================================


def _normalize_resolution(value: Any) -> str:
    match = _RESOLUTION_RE.fullmatch(str(value).strip())
    if match is None or int(match[1]) <= 0 or int(match[2]) <= 0:
        raise ValueError(f"Invalid resolution: {value!r} (expected W:H)")
    return f"{int(match[1])}:{int(match[2])}"


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Invalid {name}: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if _INT_RE.fullmatch(text) is None:
        raise ValueError(f"Invalid {name}: {value!r}")
    return int(text)


def _normalize_bitrate(value: Any) -> int:
    if isinstance(value, str) and value.strip().lower().endswith("k"):
        value = value.strip()[:-1]
    bitrate = _as_int(value, "bitrate")
    if bitrate <= 0:
        raise ValueError(f"Bitrate must be positive, got {bitrate}")
    return bitrate


def _normalize_framerate(value: Any) -> int:
    framerate = _as_int(value, "framerate")
    if framerate <= 0:
        raise ValueError(f"Framerate must be positive, got {framerate}")
    return framerate


def _normalize_quality(value: Any) -> int:
    quality = _as_int(value, "quality")
    if not MIN_QUALITY <= quality <= MAX_QUALITY:
        raise ValueError(
            f"Quality must be between {MIN_QUALITY} and {MAX_QUALITY}, got {quality}"
        )
    return quality


def _normalize_preset(value: Any) -> str:
    preset = str(value).strip()
    if preset not in PRESETS:
        raise ValueError(f"Invalid preset: {value!r}")
    return preset


# ============================================================
# FlagSpec テーブル
# ============================================================


@dataclass(frozen=True)
class PairedFlag:
    """主フラグと同時に更新される従属フラグ.

    ベクタに存在する場合のみ更新し、無ければ追加しない。
    """

    flag: str
    decode: Callable[[str], Any]
    encode: Callable[[Any, str | None], str]


@dataclass(frozen=True)
class FlagSpec:
    """EncodingSettings の 1 項目とフラグトークンの対応.

    Attributes:
        field: EncodingSettings の属性名
        flag: 値を導入するフラグトークン
        decode: 値トークン → 設定値 (読めなければ None)
        encode: (設定値, 置き換え前トークン) → 値トークン
        normalize: 更新値の検証・正規化
        anchor: フラグが無い場合の挿入位置 (このトークンの直前)
        paired: 同時に更新する従属フラグ
        numeric: 値が数値であるべきか (不正値を構成エラーとみなす)
    """

    field: str
    flag: str
    decode: Callable[[str], Any]
    encode: Callable[[Any, str | None], str]
    normalize: Callable[[Any], Any]
    anchor: str | None = ANCHOR_FLAG
    paired: tuple[PairedFlag, ...] = ()
    numeric: bool = False


FLAG_SPECS: tuple[FlagSpec, ...] = (
    FlagSpec(
        field="resolution",
        flag="-vf",
        decode=_decode_scale,
        encode=_encode_scale,
        normalize=_normalize_resolution,
    ),
    FlagSpec(
        field="bitrate",
        flag="-maxrate",
        decode=_decode_kbps,
        encode=_encode_kbps,
        normalize=_normalize_bitrate,
        paired=(PairedFlag("-bufsize", _decode_kbps, _encode_double_kbps),),
        numeric=True,
    ),
    FlagSpec(
        field="framerate",
        flag="-r",
        decode=_decode_positive_int,
        encode=_encode_plain,
        normalize=_normalize_framerate,
        numeric=True,
    ),
    FlagSpec(
        field="quality",
        flag="-crf",
        decode=_decode_int,
        encode=_encode_plain,
        normalize=_normalize_quality,
        numeric=True,
    ),
    FlagSpec(
        field="preset",
        flag="-preset",
        decode=_decode_preset,
        encode=_encode_plain,
        normalize=_normalize_preset,
    ),
)

_SPECS_BY_FIELD = {spec.field: spec for spec in FLAG_SPECS}


# ============================================================
# コマンド文字列 ⇔ ベクタ
# ============================================================


def split_command(command: str) -> list[str]:
    """runOnReady 文字列をトークン列に分割する.

    空白 1 個区切り。join_command() の逆変換になる。
    """
    if not command:
        return []
    return command.split(" ")


def join_command(vector: Sequence[str]) -> str:
    """トークン列を runOnReady 文字列に戻す."""
    return " ".join(vector)


def build_relay_command(rtsp_url: str, rtmp_url: str) -> str:
    """新規カメラ用のデフォルト起動コマンドを組み立てる."""
    return _RELAY_COMMAND_TEMPLATE.format(rtsp_url=rtsp_url, rtmp_url=rtmp_url)


# ============================================================
# decode / encode
# ============================================================


def _flag_index(vector: Sequence[str], flag: str) -> int:
    """最初に現れるフラグの位置 (無ければ -1)."""
    for index, token in enumerate(vector):
        if token == flag:
            return index
    return -1


def _value_token(vector: Sequence[str], index: int) -> str | None:
    """index のフラグに続く値トークン (無ければ None)."""
    if index + 1 >= len(vector):
        return None
    token = vector[index + 1]
    if _OPTION_RE.match(token):
        # 次のオプション (値が欠けている)
        return None
    return token


def find_problems(vector: Sequence[str]) -> list[str]:
    """テーブル上のフラグについて構成エラーを列挙する.

    Returns:
        値の無いフラグ、数値として読めない値の説明 (問題が無ければ空)
    """
    problems: list[str] = []
    for spec in FLAG_SPECS:
        checks = [(spec.flag, spec.decode, spec.numeric)]
        checks.extend((paired.flag, paired.decode, True) for paired in spec.paired)
        for flag, decode_fn, numeric in checks:
            index = _flag_index(vector, flag)
            if index < 0:
                continue
            token = _value_token(vector, index)
            if token is None:
                problems.append(f"{flag} has no value")
            elif numeric and decode_fn(token) is None:
                problems.append(f"{flag} has invalid value {token!r}")
    return problems


def decode(vector: Sequence[str]) -> EncodingSettings:
    """引数ベクタからエンコード設定を読み取る.

    フラグごとに先頭から走査し、最初の出現を採用する。
    フラグが無い・値が読めない項目はデフォルト値のまま (例外は出さない)。
    """
    settings = EncodingSettings()
    for spec in FLAG_SPECS:
        index = _flag_index(vector, spec.flag)
        if index < 0:
            continue
        token = _value_token(vector, index)
        value = spec.decode(token) if token is not None else None
        if value is None:
            logger.warning(
                "Ignoring %s in relay command (value=%r), using default %s",
                spec.flag,
                token,
                spec.field,
            )
            continue
        setattr(settings, spec.field, value)
    return settings


def encode(vector: Sequence[str], updates: Mapping[str, Any]) -> list[str]:
    """エンコード設定の部分更新をベクタに反映する.

    - フラグがあれば直後の値トークンだけを置き換える（長さ・順序は不変）
    - フラグが無ければ anchor の直前に (flag, value) を挿入、
      anchor も無ければ末尾に追加
    - bitrate は -maxrate と -bufsize (2 倍) を同時に更新する。
      -bufsize が無い場合は追加しない

    Args:
        vector: 現在の引数ベクタ (変更しない)
        updates: 項目名 → 値。None の項目は更新しない

    Returns:
        更新後の新しいベクタ

    Raises:
        ValueError: 未知の項目名、または値が不正な場合
        MalformedConfigurationError: ベクタに構成エラーがある場合
    """
    normalized: dict[str, Any] = {}
    for key, value in updates.items():
        if value is None:
            continue
        spec = _SPECS_BY_FIELD.get(key)
        if spec is None:
            raise ValueError(f"Unknown encoding setting: {key}")
        normalized[key] = spec.normalize(value)

    tokens = list(vector)
    if not normalized:
        return tokens

    problems = find_problems(tokens)
    if problems:
        raise MalformedConfigurationError(problems)

    for spec in FLAG_SPECS:
        if spec.field not in normalized:
            continue
        value = normalized[spec.field]

        index = _flag_index(tokens, spec.flag)
        if index >= 0:
            tokens[index + 1] = spec.encode(value, tokens[index + 1])
        else:
            pair = [spec.flag, spec.encode(value, None)]
            anchor = _flag_index(tokens, spec.anchor) if spec.anchor else -1
            if anchor >= 0:
                tokens[anchor:anchor] = pair
            else:
                tokens.extend(pair)

        for paired in spec.paired:
            paired_index = _flag_index(tokens, paired.flag)
            if paired_index >= 0:
                tokens[paired_index + 1] = paired.encode(
                    value, tokens[paired_index + 1]
                )

    return tokens


# ============================================================
# 出力先・ビットレートの抽出
# ============================================================


def find_push_target(vector: Sequence[str]) -> str | None:
    """ベクタに埋め込まれた RTMP 送出先 URL を返す.

    -i の値 (入力 URL) は対象外。
    """
    for index, token in enumerate(vector):
        match = _PUSH_TARGET_RE.search(token)
        if match is None:
            continue
        if index > 0 and vector[index - 1] == "-i":
            continue
        return match.group(0)
    return None


def find_target_bitrate(vector: Sequence[str]) -> int | None:
    """-b:v で明示されたビットレート (kbps)."""
    index = _flag_index(vector, TARGET_BITRATE_FLAG)
    if index < 0:
        return None
    token = _value_token(vector, index)
    if token is None:
        return None
    return _decode_kbps(token)
