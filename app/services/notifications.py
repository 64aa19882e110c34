"""
站内通知

notify(user_id, payload) 在业务事务提交之后调用：
  1. 写入 notification 表（独立会话）
  2. 通过 Redis 发布到 notifications:{user_id}（若缓存可用）

通知是尽力而为的：任何失败只记日志，不影响已经提交的交易。
读取按时间倒序分页；mark_read 只改本人的通知。
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from app.models.db_models import Notification
from app.schemas.trade import NotificationOut, NotificationPage

logger = logging.getLogger(__name__)

NotePayload = dict


class Notifier:
    def __init__(self, session_factory, cache=None):
        self.session_factory = session_factory
        self.cache = cache

    async def notify(self, user_id: int, payload: NotePayload) -> Optional[int]:
        """payload: {title, message, type, link}"""
        try:
            async with self.session_factory() as db, db.begin():
                row = Notification(
                    user_id=user_id,
                    type=payload.get("type", "system"),
                    title=payload.get("title", ""),
                    message=payload.get("message", ""),
                    link=payload.get("link"),
                )
                db.add(row)
                await db.flush()
                note_id = row.id
        except SQLAlchemyError as e:
            logger.warning("notify: user=%s 写入通知失败: %s", user_id, e)
            return None

        if self.cache is not None:
            await self.cache.publish(f"notifications:{user_id}", {"id": note_id, **payload})
        return note_id

    async def notify_all(self, notes: Iterable[Tuple[int, NotePayload]]) -> List[Optional[int]]:
        return [await self.notify(user_id, payload) for user_id, payload in notes]

    # ── 读取 / 已读 ──────────────────────────────────────────────────────────

    async def list(
        self,
        user_id: int,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> NotificationPage:
        mine = Notification.user_id == user_id
        unread = Notification.read.is_(False)
        async with self.session_factory() as db:
            stmt = select(Notification).where(mine)
            count = select(func.count(Notification.id)).where(mine)
            if unread_only:
                stmt = stmt.where(unread)
                count = count.where(unread)
            rows = (
                await db.execute(
                    stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
                    .limit(limit).offset(offset)
                )
            ).scalars().all()
            total = await db.scalar(count)
            unread_count = await db.scalar(select(func.count(Notification.id)).where(mine, unread))

        return NotificationPage(
            notifications=[NotificationOut.model_validate(r) for r in rows],
            total=total or 0,
            unread_count=unread_count or 0,
            limit=limit,
            offset=offset,
        )

    async def mark_read(self, user_id: int, ids: Optional[Iterable[int]] = None) -> int:
        """ids 为 None 时全部标记已读；返回实际改动的条数"""
        stmt = update(Notification).where(Notification.user_id == user_id, Notification.read.is_(False))
        if ids is not None:
            ids = list(ids)
            if not ids:
                return 0
            stmt = stmt.where(Notification.id.in_(ids))
        async with self.session_factory() as db, db.begin():
            res = await db.execute(stmt.values(read=True).execution_options(synchronize_session=False))
        logger.info("mark_read: user=%s  updated=%d", user_id, res.rowcount)
        return res.rowcount
