"""
Run-scoped context passed explicitly to every adapter call.
"""

import time
from typing import Dict, Any, Optional, NamedTuple


class RunContext(NamedTuple):
    """
    Immutable per-run state: configuration, current identity-provider bearer
    token and the optional run deadline (time.monotonic() based).

    Refreshing the token produces a new context instead of mutating this one.
    """

    config: Dict[str, Any]
    token: Optional[str] = None
    deadline: Optional[float] = None

    @classmethod
    def create(cls, config: Dict[str, Any], token: Optional[str] = None) -> 'RunContext':
        max_runtime = (config.get('run') or {}).get('max_runtime_seconds') or 0
        deadline = time.monotonic() + max_runtime if max_runtime > 0 else None
        return cls(config=config, token=token, deadline=deadline)

    def with_token(self, token: str) -> 'RunContext':
        return self._replace(token=token)

    def deadline_passed(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline
