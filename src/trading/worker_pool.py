from __future__ import annotations

from src.domain.errors import ConfigurationError
from src.domain.models import WorkerAccount


class WorkerPoolRegistry:
    """Fixed, ordered pool of worker accounts. Pure data access."""

    def __init__(self, accounts: list[WorkerAccount], pool_size: int):
        if int(pool_size) < 1:
            raise ConfigurationError(f"Worker pool size must be >= 1; got {pool_size}")
        ordered = sorted(accounts, key=lambda a: a.index)
        if len(ordered) < int(pool_size):
            raise ConfigurationError(
                f"Worker pool has {len(ordered)} accounts; {pool_size} are required"
            )
        ordered = ordered[: int(pool_size)]
        for pos, acct in enumerate(ordered):
            if acct.index != pos:
                raise ConfigurationError(f"Worker pool is not contiguous: expected index {pos}, found {acct.index}")
            if not acct.address or not acct.secret:
                raise ConfigurationError(f"Worker {pos} is missing its address or credentials")
        self._accounts = tuple(ordered)

    def get(self, index: int) -> WorkerAccount:
        if not 0 <= int(index) < len(self._accounts):
            raise ConfigurationError(f"Worker index {index} outside pool of {len(self._accounts)}")
        return self._accounts[int(index)]

    def size(self) -> int:
        return len(self._accounts)

    def __iter__(self):
        return iter(self._accounts)
