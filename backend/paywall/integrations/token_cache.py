"""
渠道访问令牌缓存

每个网关实例持有自己的 AccessTokenCache，令牌只在该适配器内部使用。
读取时若令牌已过期（或即将过期）则调用刷新函数换取新令牌。
"""
from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

# 刷新函数返回 (access_token, expires_in 秒)
TokenRefresher = Callable[[], tuple[str, int]]


@dataclass
class AccessTokenCache:
    """
    访问令牌缓存值对象

    - token: 当前令牌
    - expires_at: 过期时间（clock 时间轴上的秒数）
    - skew_seconds: 提前多少秒视为过期
    """
    skew_seconds: int = 60
    token: str | None = None
    expires_at: float = 0.0
    clock: Callable[[], float] = time.monotonic
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def is_stale(self) -> bool:
        return self.token is None or self.clock() >= self.expires_at - self.skew_seconds

    def get(self, refresh: TokenRefresher) -> str:
        """返回有效令牌，过期时先刷新"""
        with self._lock:
            if self.token is not None and not self.is_stale():
                return self.token
            token, expires_in = refresh()
            self.token = token
            self.expires_at = self.clock() + max(int(expires_in), 0)
            return token

    def invalidate(self) -> None:
        """渠道返回 401 时丢弃令牌，下次读取强制刷新"""
        with self._lock:
            self.token = None
            self.expires_at = 0.0
