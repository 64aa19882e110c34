"""Steam Community 库存接口响应 Pydantic 模型"""

from __future__ import annotations

from typing import List, Optional, Set
from pydantic import BaseModel, Field


class SteamAsset(BaseModel):
    """assets 数组中的单条记录"""
    appid: int
    contextid: str
    assetid: str
    classid: str
    instanceid: str
    amount: str = "1"


class SteamInventoryResponse(BaseModel):
    """
    Steam Community 库存接口的一页响应。
    只关心 asset 列表和分页游标，descriptions 忽略。
    """
    assets: List[SteamAsset] = Field(default_factory=list)
    total_inventory_count: int = 0
    more_items: Optional[int] = None
    last_assetid: Optional[str] = None
    success: int = 1

    @property
    def asset_ids(self) -> Set[str]:
        return {a.assetid for a in self.assets}

    @property
    def has_next_page(self) -> bool:
        return bool(self.more_items) and bool(self.last_assetid)
