"""A minimal "-key [value]" command line parser."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

__all__ = ["CommandLineParser"]


class CommandLineParser:
    """Parses arguments of the form "-key" or "-key value".

    Keys are case-sensitive and keep their leading "-". Arguments that are
    neither a key nor the value of one are ignored; a repeated key keeps its
    last value.
    """

    def __init__(self, argv: Sequence[str]):
        """``argv`` holds the arguments without the program name."""
        self._args: dict[str, str] = {}
        items = iter(list(argv))
        pending: str | None = None
        for arg in items:
            if arg.startswith("-"):
                if pending is not None:
                    self._args[pending] = ""
                pending = arg
            elif pending is not None:
                self._args[pending] = arg
                pending = None
        if pending is not None:
            self._args[pending] = ""

    def has_key(self, key) -> bool:
        return key in self._args

    def get_value(self, key, kind: Callable[[str], Any] = str) -> Any:
        """Convert the first whitespace-separated token of the value with ``kind``."""
        if key not in self._args:
            raise KeyError(key)
        tokens = self._args[key].split()
        return kind(tokens[0] if tokens else "")