import time
from collections import deque, defaultdict
from typing import Optional


class SimpleRateLimiter:
    """
    Rate limiter simples em memória (processo único), por chave (IP).
    - window_s: janela em segundos (ex.: 60)
    - max_requests: máx. requisições por janela
    Chaves sem eventos na janela são descartadas a cada varredura.
    """
    def __init__(self, window_s: int = 60, max_requests: int = 120):
        self.window_s = window_s
        self.max_requests = max_requests
        self.events = defaultdict(deque)
        self._last_sweep = 0.0

    def _sweep(self, now: float) -> None:
        for key in [k for k, q in self.events.items() if not q or (now - q[-1]) > self.window_s]:
            del self.events[key]
        self._last_sweep = now

    def allow(self, key: str, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        if (now - self._last_sweep) > self.window_s:
            self._sweep(now)

        q = self.events[key]
        while q and (now - q[0]) > self.window_s:
            q.popleft()

        if len(q) >= self.max_requests:
            return False

        q.append(now)
        return True

    def reset(self) -> None:
        self.events.clear()
        self._last_sweep = 0.0
