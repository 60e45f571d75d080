from __future__ import annotations

from calsync.models import RulesConfig


class CopyRules:
    """Which source events are mirrored, and how their summaries are rewritten."""

    def __init__(self, config: RulesConfig | None = None) -> None:
        self.config = config or RulesConfig()
        self._keywords = [keyword.casefold() for keyword in self.config.exclude_keywords]

    def should_copy(self, summary: str, is_transparent: bool) -> bool:
        if is_transparent and self.config.skip_transparent:
            return False
        summary_key = str(summary or "").casefold()
        return not any(keyword in summary_key for keyword in self._keywords)

    @staticmethod
    def new_summary(original: str, replacement: str | None) -> str:
        if replacement is None or not str(replacement).strip():
            return original
        return str(replacement)
