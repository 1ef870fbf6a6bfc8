"""relay-admin の例外クラス."""


class StreamNotFoundError(KeyError):
    """指定されたストリーム (path) が存在しない."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Stream {self.name} not found"


class MalformedConfigurationError(ValueError):
    """引数ベクタが壊れている (値のないフラグ、数値として読めない値).

    Attributes:
        problems: 検出した問題の一覧
    """

    def __init__(self, problems: list[str]):
        super().__init__("; ".join(problems))
        self.problems = problems


class UpstreamUnavailableError(RuntimeError):
    """リレー API への問い合わせが失敗した."""


class StatusUnavailableError(RuntimeError):
    """上流が応答しないためストリーム状態を判定できない."""


class DuplicateStreamError(ValueError):
    """同名のストリーム (path) が既に存在する."""
