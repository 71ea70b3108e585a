"""
キュークライアント — Redis 上の at-least-once キュー

可視性タイムアウト付きのキューを Redis のソート済みセット 1 つで表現する。

  <name>:visible   ZSET  message_id → 次に受信可能になる時刻 (epoch 秒)
  <name>:messages  HASH  message_id → {"body", "attributes", "sent_at"} の JSON
  <name>:receipts  HASH  message_id → 現在有効な受信ハンドル
  <name>:receives  HASH  message_id → 受信回数
  <name>:dead      LIST  デッドレター送りになった message_id

受信するとスコアが「現在時刻 + 可視性タイムアウト」に書き換わり、
その間は他の受信者から見えない。削除されないままタイムアウトすると
スコアが現在時刻を下回り、再び受信される（再配信）。

  enqueue ──▶ [visible: score=now] ──receive──▶ [score=now+timeout]
                     ▲                               │
                     └──── タイムアウト (再配信) ─────┤
                                                     └──delete──▶ 消滅
"""

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from .errors import QueueError

logger = logging.getLogger(__name__)


@dataclass
class QueueMessage:
    message_id: str
    body: str
    receipt_handle: str
    attributes: dict[str, str] = field(default_factory=dict)
    receive_count: int = 1

    @property
    def correlation_id(self) -> str | None:
        return self.attributes.get("CorrelationId")


class RedisQueue:
    """可視性タイムアウト付きの耐久キュー"""

    def __init__(
        self,
        redis: aioredis.Redis,
        name: str,
        visibility_timeout: float = 30.0,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self.clock = clock

        self._visible_key = f"{name}:visible"
        self._messages_key = f"{name}:messages"
        self._receipts_key = f"{name}:receipts"
        self._receives_key = f"{name}:receives"
        self._dead_key = f"{name}:dead"

    # ── 送信 ─────────────────────────────────────

    async def enqueue(self, body: str, attributes: dict[str, str] | None = None) -> str:
        """メッセージを永続化し、message_id を返す。"""
        message_id = uuid.uuid4().hex
        now = self.clock()
        envelope = json.dumps({
            "body": body,
            "attributes": attributes or {},
            "sent_at": now,
        })
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._messages_key, message_id, envelope)
                pipe.zadd(self._visible_key, {message_id: now})
                await pipe.execute()
        except RedisError as e:
            raise QueueError(f"Failed to enqueue message: {e}") from e
        return message_id

    # ── 受信 ─────────────────────────────────────

    async def receive(
        self,
        max_messages: int = 10,
        wait_seconds: float = 0,
        stop_event: asyncio.Event | None = None,
    ) -> list[QueueMessage]:
        """
        ロングポーリングで最大 max_messages 件を受信する。

        wait_seconds の間に 1 件も受信できなければ空リストを返す。
        受信したメッセージは可視性タイムアウトの間だけ他から見えなくなる。
        stop_event がセットされたら待機を打ち切り、何も確保せずに空リストを返す。
        """
        deadline = time.monotonic() + wait_seconds
        while True:
            if stop_event is not None and stop_event.is_set():
                return []
            try:
                messages = await self._claim(max_messages)
            except RedisError as e:
                raise QueueError(f"Failed to receive messages: {e}") from e
            if messages or time.monotonic() >= deadline:
                return messages
            delay = min(self.poll_interval, max(deadline - time.monotonic(), 0))
            if stop_event is None:
                await asyncio.sleep(delay)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    async def _claim(self, max_messages: int) -> list[QueueMessage]:
        """受信可能な ID を WATCH/MULTI で楽観的に確保する。"""
        while True:
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self._visible_key)
                    now = self.clock()
                    ids = await pipe.zrangebyscore(
                        self._visible_key, "-inf", now, start=0, num=max_messages
                    )
                    if not ids:
                        await pipe.unwatch()
                        return []
                    ids = [_decode(i) for i in ids]
                    handles = {i: f"{i}:{uuid.uuid4().hex}" for i in ids}

                    pipe.multi()
                    pipe.zadd(
                        self._visible_key,
                        {i: now + self.visibility_timeout for i in ids},
                    )
                    pipe.hset(self._receipts_key, mapping=handles)
                    for i in ids:
                        pipe.hincrby(self._receives_key, i, 1)
                    pipe.hmget(self._messages_key, ids)
                    results = await pipe.execute()
                except WatchError:
                    # 他の受信者と競合した。取り直す。
                    continue

            counts = results[2:2 + len(ids)]
            envelopes = results[-1]
            messages = []
            for message_id, count, raw in zip(ids, counts, envelopes):
                if raw is None:
                    # 本文のない ID は削除と競合した残骸
                    await self.redis.zrem(self._visible_key, message_id)
                    continue
                try:
                    envelope = json.loads(raw)
                    body = envelope["body"]
                except (TypeError, ValueError, KeyError) as e:
                    # 壊れたエンベロープはその 1 件だけ外し、残りは配信する
                    logger.error("Corrupt envelope for message %s: %s", message_id, e)
                    await self.dead_letter(handles[message_id])
                    continue
                messages.append(QueueMessage(
                    message_id=message_id,
                    body=body,
                    receipt_handle=handles[message_id],
                    attributes=envelope.get("attributes") or {},
                    receive_count=int(count),
                ))
            return messages

    # ── 削除 / デッドレター ───────────────────────

    async def delete(self, receipt_handle: str) -> bool:
        """
        メッセージを完全に削除する（冪等）。

        既に削除済み・期限切れで再配信済み・形式不正のハンドルは
        何もせず False を返す。キューの状態を壊すことはない。
        """
        message_id = await self._current_id(receipt_handle)
        if message_id is None:
            logger.warning("Ignoring delete for stale receipt handle %s", receipt_handle)
            return False
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._visible_key, message_id)
                pipe.hdel(self._messages_key, message_id)
                pipe.hdel(self._receipts_key, message_id)
                pipe.hdel(self._receives_key, message_id)
                await pipe.execute()
        except RedisError as e:
            raise QueueError(f"Failed to delete message {message_id}: {e}") from e
        return True

    async def dead_letter(self, receipt_handle: str) -> bool:
        """メッセージを受信対象から外し、デッドレターリストへ移す。"""
        message_id = await self._current_id(receipt_handle)
        if message_id is None:
            return False
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._visible_key, message_id)
                pipe.hdel(self._receipts_key, message_id)
                pipe.lpush(self._dead_key, message_id)
                await pipe.execute()
        except RedisError as e:
            raise QueueError(f"Failed to dead-letter message {message_id}: {e}") from e
        return True

    async def _current_id(self, receipt_handle: str) -> str | None:
        message_id, sep, _ = receipt_handle.rpartition(":")
        if not sep or not message_id:
            return None
        try:
            current = await self.redis.hget(self._receipts_key, message_id)
        except RedisError as e:
            raise QueueError(f"Failed to look up receipt handle: {e}") from e
        if current is None or _decode(current) != receipt_handle:
            return None
        return message_id

    # ── 監視用 ───────────────────────────────────

    async def inspect_depth(self) -> int:
        """受信可能なメッセージのおおよその件数（ヘルスチェック用）"""
        try:
            return await self.redis.zcount(self._visible_key, "-inf", self.clock())
        except RedisError as e:
            raise QueueError(f"Failed to inspect queue depth: {e}") from e

    async def dead_letter_depth(self) -> int:
        try:
            return await self.redis.llen(self._dead_key)
        except RedisError as e:
            raise QueueError(f"Failed to inspect dead-letter depth: {e}") from e

    async def ping(self) -> int:
        """軽量なメタデータ呼び出し。疎通を確認して深さを返す。"""
        try:
            await self.redis.ping()
        except RedisError as e:
            raise QueueError(f"Queue unreachable: {e}") from e
        return await self.inspect_depth()


def _decode(value) -> str:
    return value.decode() if isinstance(value, bytes) else value
