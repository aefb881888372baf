"""Segmented code entry: one digit per box plus the index of the focused box.

Every operation returns a new ``CodeInput``; nothing here knows about widgets.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Tuple

CODE_LENGTH = 4

_PASTE_SEPARATORS = re.compile(r"[\s\-]")


def _empty(length: int) -> Tuple[str, ...]:
    return ("",) * length


@dataclass(frozen=True)
class CodeInput:
    length: int = CODE_LENGTH
    digits: Tuple[str, ...] = _empty(CODE_LENGTH)
    focus: int = 0

    def __post_init__(self):
        if len(self.digits) != self.length:
            object.__setattr__(self, "digits", _empty(self.length))

    @classmethod
    def empty(cls, length: int = CODE_LENGTH) -> "CodeInput":
        return cls(length=length, digits=_empty(length), focus=0)

    @property
    def value(self) -> str:
        return "".join(self.digits)

    @property
    def is_complete(self) -> bool:
        return all(self.digits)

    def _with(self, digits=None, focus=None) -> "CodeInput":
        return replace(
            self,
            digits=tuple(digits) if digits is not None else self.digits,
            focus=self.focus if focus is None else max(0, min(focus, self.length - 1)),
        )

    def type_digit(self, ch: str) -> "CodeInput":
        if len(ch) != 1 or not ch.isdigit() or not ch.isascii():
            return self
        digits = list(self.digits)
        digits[self.focus] = ch
        return self._with(digits, self.focus + 1)

    def backspace(self) -> "CodeInput":
        digits = list(self.digits)
        if digits[self.focus]:
            digits[self.focus] = ""
            return self._with(digits)
        if self.focus == 0:
            return self
        digits[self.focus - 1] = ""
        return self._with(digits, self.focus - 1)

    def arrow_left(self) -> "CodeInput":
        return self._with(focus=self.focus - 1)

    def arrow_right(self) -> "CodeInput":
        return self._with(focus=self.focus + 1)

    def focus_at(self, index: int) -> "CodeInput":
        return self._with(focus=index)

    def paste(self, text: str) -> "CodeInput":
        """Fill boxes from the focused one onwards.

        A full-length paste always fills every box and leaves focus on the last.
        Anything with non-digit characters (other than spaces/dashes) is ignored.
        """
        cleaned = _PASTE_SEPARATORS.sub("", text or "")
        if not cleaned or not (cleaned.isdigit() and cleaned.isascii()):
            return self
        if len(cleaned) >= self.length:
            return self._with(cleaned[: self.length], self.length - 1)
        digits = list(self.digits)
        pos = self.focus
        for ch in cleaned:
            if pos >= self.length:
                break
            digits[pos] = ch
            pos += 1
        return self._with(digits, pos)

    def clear(self) -> "CodeInput":
        return CodeInput.empty(self.length)
