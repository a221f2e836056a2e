from __future__ import annotations
from typing import List, Optional, Sequence, Tuple

# emoji offered by the picker, in display order
DEFAULT_PALETTE: Tuple[str, ...] = (
    "😀", "😂", "😍", "😎", "🤔", "😢", "😡", "😱",
    "👍", "👎", "👏", "🙏", "💪", "🎉", "🔥", "❤️",
    "🍕", "🍺", "☕", "🐶", "🐱", "🚀", "🌈", "👨‍👩‍👧",
)


class Palette:
    def __init__(self, emoji: Sequence[str] = DEFAULT_PALETTE, columns: int = 8) -> None:
        if not emoji:
            raise ValueError("palette must not be empty")
        self.emoji: List[str] = list(emoji)
        self.columns = max(1, columns)

    def __len__(self) -> int:
        return len(self.emoji)

    def pick(self, index: int) -> Optional[str]:
        """1-based lookup; None when out of range (nothing selected)."""
        if 1 <= index <= len(self.emoji):
            return self.emoji[index - 1]
        return None

    def parse(self, choice: str) -> Optional[str]:
        """Like pick(), from user input; None unless ``choice`` is a plain decimal number."""
        choice = choice.strip()
        if not (choice.isascii() and choice.isdecimal()):
            return None
        return self.pick(int(choice))

    def rows(self) -> List[List[Tuple[int, str]]]:
        numbered = list(enumerate(self.emoji, start=1))
        return [numbered[i:i + self.columns] for i in range(0, len(numbered), self.columns)]
