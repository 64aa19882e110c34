"""
交易投影缓存（Redis，可选）

  trade:{id}          单笔交易的 TradeOut JSON，TTL 默认 3600 秒
                      写入按 version 比较（Lua 脚本），旧版本不会覆盖新版本
  user:trades:{id}    用户活跃交易 id 列表，TTL 默认 300 秒

频道：
  trade:created          新交易
  trade:updated          每次提交后的完整 TradeOut
  trade:status:changed   状态变更事件 {trade_id, old_status, new_status, version, timestamp}

缓存永远不是权威数据：任何 Redis 异常只记 WARNING，调用方照常走数据库。
未开启 use_redis 或连接失败时 enabled=False，所有方法直接返回。
"""

from __future__ import annotations

import json
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from app.core.config import settings
from app.models.db_models import utcnow
from app.models.status import TradeStatus
from app.schemas.trade import TradeOut, TradeStatusEvent

logger = logging.getLogger(__name__)

_CACHE_ERRORS = (RedisError, OSError)

CHANNEL_CREATED = "trade:created"
CHANNEL_UPDATED = "trade:updated"
CHANNEL_STATUS = "trade:status:changed"

# 只在缓存里没有更新版本时写入；旧版本或损坏的投影直接覆盖
_PUT_IF_NEWER = """
local cur = redis.call('GET', KEYS[1])
if cur then
  local ok, doc = pcall(cjson.decode, cur)
  if ok and type(doc) == 'table' and tonumber(doc['version']) and tonumber(doc['version']) > tonumber(ARGV[2]) then
    return 0
  end
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[3])
return 1
"""


class TradeCache:
    def __init__(
        self,
        url: Optional[str] = None,
        *,
        enabled: Optional[bool] = None,
        prefix: Optional[str] = None,
        ttl: Optional[int] = None,
        user_ttl: Optional[int] = None,
        client=None,
    ):
        self.url = url or settings.redis_url
        self.prefix = settings.redis_prefix if prefix is None else prefix
        self.ttl = ttl or settings.trade_cache_ttl
        self.user_ttl = user_ttl or settings.user_trades_ttl
        self._wanted = settings.use_redis if enabled is None else enabled
        self._client = client
        self._connected = False
        self._put_script = None

    # ── 生命周期 ────────────────────────────────────────────────────────────

    async def connect(self) -> bool:
        if not self._wanted:
            logger.info("TradeCache: use_redis 未开启，交易读写直接走数据库")
            return False
        if self._client is None:
            self._client = aioredis.from_url(self.url, decode_responses=True)
        try:
            await self._client.ping()
        except _CACHE_ERRORS as e:
            logger.warning("TradeCache: Redis 不可用 (%s)，回落到数据库", e)
            self._connected = False
            return False
        self._put_script = self._client.register_script(_PUT_IF_NEWER)
        self._connected = True
        logger.info("TradeCache: Redis 已连接 %s", self.url)
        return True

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except _CACHE_ERRORS as e:
                logger.warning("TradeCache: 关闭连接失败 %s", e)
        self._client = None
        self._put_script = None
        self._connected = False

    @property
    def enabled(self) -> bool:
        return self._connected and self._client is not None

    # ── key ────────────────────────────────────────────────────────────────

    def trade_key(self, trade_id: int) -> str:
        return f"{self.prefix}trade:{trade_id}"

    def user_key(self, user_id: int) -> str:
        return f"{self.prefix}user:trades:{user_id}"

    # ── 单笔交易投影 ────────────────────────────────────────────────────────

    async def get(self, trade_id: int) -> Optional[TradeOut]:
        if not self.enabled:
            return None
        try:
            raw = await self._client.get(self.trade_key(trade_id))
        except _CACHE_ERRORS as e:
            logger.warning("TradeCache.get trade=%s 失败: %s", trade_id, e)
            return None
        if raw is None:
            return None
        try:
            return TradeOut.model_validate_json(raw)
        except PydanticValidationError:
            # 旧版本或损坏的投影，当作未命中
            logger.warning("TradeCache.get trade=%s 投影无法解析，丢弃", trade_id)
            await self.invalidate(trade_id)
            return None

    async def get_or_load(
        self,
        trade_id: int,
        loader: Callable[[], Awaitable[Optional[TradeOut]]],
    ) -> Optional[TradeOut]:
        cached = await self.get(trade_id)
        if cached is not None:
            return cached
        trade = await loader()
        if trade is not None:
            await self.put(trade)
        return trade

    async def put(self, trade: TradeOut) -> bool:
        """按 version 比较写入，缓存中已有更新的投影时不覆盖"""
        if not self.enabled:
            return False
        try:
            written = await self._put_script(
                keys=[self.trade_key(trade.id)],
                args=[trade.model_dump_json(), trade.version, self.ttl],
            )
        except _CACHE_ERRORS as e:
            logger.warning("TradeCache.put trade=%s 失败: %s", trade.id, e)
            return False
        if not written:
            logger.debug("TradeCache.put trade=%s version=%s 已有更新版本，跳过", trade.id, trade.version)
        return bool(written)

    async def invalidate(self, trade_id: int) -> None:
        if not self.enabled:
            return
        try:
            await self._client.delete(self.trade_key(trade_id))
        except _CACHE_ERRORS as e:
            logger.warning("TradeCache.invalidate trade=%s 失败: %s", trade_id, e)

    # ── 用户活跃交易列表 ────────────────────────────────────────────────────

    async def get_user_trade_ids(self, user_id: int) -> Optional[List[int]]:
        if not self.enabled:
            return None
        try:
            raw = await self._client.get(self.user_key(user_id))
        except _CACHE_ERRORS as e:
            logger.warning("TradeCache.get_user_trade_ids user=%s 失败: %s", user_id, e)
            return None
        if raw is None:
            return None
        try:
            return [int(i) for i in json.loads(raw)]
        except (ValueError, TypeError):
            await self.invalidate_user(user_id)
            return None

    async def put_user_trade_ids(self, user_id: int, trade_ids: Iterable[int]) -> None:
        if not self.enabled:
            return
        try:
            await self._client.set(self.user_key(user_id), json.dumps(list(trade_ids)), ex=self.user_ttl)
        except _CACHE_ERRORS as e:
            logger.warning("TradeCache.put_user_trade_ids user=%s 失败: %s", user_id, e)

    async def invalidate_user(self, *user_ids: int) -> None:
        if not self.enabled or not user_ids:
            return
        try:
            await self._client.delete(*(self.user_key(u) for u in user_ids))
        except _CACHE_ERRORS as e:
            logger.warning("TradeCache.invalidate_user %s 失败: %s", user_ids, e)

    # ── pub/sub ─────────────────────────────────────────────────────────────

    async def publish(self, channel: str, payload: dict) -> None:
        if not self.enabled:
            return
        try:
            await self._client.publish(channel, json.dumps(payload, default=str, ensure_ascii=False))
        except _CACHE_ERRORS as e:
            logger.warning("TradeCache.publish %s 失败: %s", channel, e)

    async def publish_status_change(self, trade: TradeOut, old_status: Optional[TradeStatus]) -> None:
        event = TradeStatusEvent(
            trade_id=trade.id,
            old_status=old_status,
            new_status=trade.status,
            version=trade.version,
            buyer_id=trade.buyer_id,
            seller_id=trade.seller_id,
            timestamp=utcnow(),
        )
        await self.publish(CHANNEL_STATUS, event.model_dump(mode="json"))

    async def listen(
        self,
        handler: Callable[[TradeStatusEvent], Awaitable[None]],
        channel: str = CHANNEL_STATUS,
    ) -> None:
        """订阅状态变更（供其他进程使用），直到连接关闭或订阅结束"""
        if not self.enabled:
            return
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(channel)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = TradeStatusEvent.model_validate_json(message["data"])
                except PydanticValidationError:
                    logger.warning("TradeCache.listen: 无法解析的事件 %r", message.get("data"))
                    continue
                await handler(event)
        except _CACHE_ERRORS as e:
            logger.warning("TradeCache.listen %s 中断: %s", channel, e)
        finally:
            await pubsub.aclose()


class StatusChangeTracker:
    """按 version 过滤重复与乱序的状态变更事件"""

    def __init__(self):
        self._versions: Dict[int, int] = {}

    def accept(self, event: TradeStatusEvent) -> bool:
        last = self._versions.get(event.trade_id, 0)
        if event.version <= last:
            return False
        self._versions[event.trade_id] = event.version
        return True

    def last_version(self, trade_id: int) -> Optional[int]:
        return self._versions.get(trade_id)
