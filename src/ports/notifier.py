from __future__ import annotations

from typing import Protocol


class NotifierPort(Protocol):
    def notify(self, text: str) -> None: ...
