"""
Steam Community 库存查询（买家确认收货前的外部校验）

端点：GET https://steamcommunity.com/inventory/{steamid}/730/2
      ?l=english&count=500[&start_assetid={cursor}]

is_asset_still_held_by(steam_id, asset_id)：
  True   饰品仍在卖家库存中（卖家尚未发货）
  False  翻完所有分页都没找到
  抛 ExternalDependencyError  超时 / 网络错误 / 5xx 重试耗尽 / 私密库存 / 响应异常

网络错误和 5xx、429 按指数退避重试（backoff），其他 4xx 立即放弃。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

import backoff
import httpx
from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.core.errors import ExternalDependencyError
from app.schemas.steam import SteamInventoryResponse

logger = logging.getLogger(__name__)

PAGE_SIZE = 500

_BASE_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept-Language": "en-US,en;q=0.9",
}


def _build_cookies() -> Optional[Dict[str, str]]:
    if settings.steam_login_secure and settings.steam_session_id:
        return {
            "steamLoginSecure": settings.steam_login_secure,
            "sessionid": settings.steam_session_id,
        }
    return None


def _should_give_up(e: Exception) -> bool:
    """4xx（除 429 限流）重试没有意义"""
    if isinstance(e, httpx.HTTPStatusError):
        code = e.response.status_code
        return code < 500 and code != 429
    return False


class SteamInventoryClient:
    def __init__(
        self,
        *,
        url_template: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_factor: float = 1.0,
        page_delay: float = 1.2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url_template = url_template or settings.steam_inventory_url
        self.timeout = timeout or settings.steam_timeout
        self.max_retries = settings.steam_max_retries if max_retries is None else max_retries
        self.backoff_factor = backoff_factor
        self.page_delay = page_delay
        self.transport = transport

    async def _get_page(
        self, client: httpx.AsyncClient, steam_id: str, cursor: Optional[str]
    ) -> SteamInventoryResponse:
        params: dict = {"l": "english", "count": PAGE_SIZE}
        if cursor:
            params["start_assetid"] = cursor

        r = await client.get(self.url_template.format(steam_id=steam_id), params=params)
        r.raise_for_status()

        data = r.json()
        if not data or not data.get("success"):
            raise ExternalDependencyError(f"Steam 返回失败: {data}", code="steam_unsuccessful")
        return SteamInventoryResponse.model_validate(data)

    def _with_retry(self, fn):
        return backoff.on_exception(
            backoff.expo,
            (httpx.TransportError, httpx.HTTPStatusError),
            max_tries=self.max_retries + 1,
            factor=self.backoff_factor,
            giveup=_should_give_up,
            logger=logger,
        )(fn)

    async def is_asset_still_held_by(self, steam_id: str, asset_id: str) -> bool:
        fetch_page = self._with_retry(self._get_page)
        cookies = _build_cookies()
        cursor: Optional[str] = None
        pages = 0

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers=_BASE_HEADERS,
                cookies=cookies,
                transport=self.transport,
            ) as client:
                while True:
                    page = await fetch_page(client, steam_id, cursor)
                    pages += 1
                    if str(asset_id) in page.asset_ids:
                        logger.info(
                            "is_asset_still_held_by: %s 仍持有 asset=%s (page=%d)",
                            steam_id, asset_id, pages,
                        )
                        return True
                    if not page.has_next_page:
                        break
                    cursor = page.last_assetid
                    if self.page_delay:
                        await asyncio.sleep(self.page_delay)
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            if code == 403:
                raise ExternalDependencyError(
                    "卖家库存为私密，或 Cookie 已失效，无法确认饰品是否已发出",
                    code="steam_inventory_private",
                ) from e
            raise ExternalDependencyError(
                f"Steam 库存查询失败 HTTP {code}，请稍后重试", code="steam_http_error"
            ) from e
        except httpx.TimeoutException as e:
            raise ExternalDependencyError("Steam 库存查询超时，请稍后重试", code="steam_timeout") from e
        except httpx.HTTPError as e:
            raise ExternalDependencyError(f"Steam 库存查询网络错误: {e}", code="steam_network") from e
        except (PydanticValidationError, ValueError) as e:
            raise ExternalDependencyError(f"Steam 库存响应无法解析: {e}", code="steam_bad_payload") from e

        logger.info("is_asset_still_held_by: %s 已不持有 asset=%s (pages=%d)", steam_id, asset_id, pages)
        return False


def build_inventory_checker() -> Optional[SteamInventoryClient]:
    if not settings.steam_inventory_check_enabled:
        logger.warning("Steam 库存校验已关闭，买家确认收货将不做外部核验")
        return None
    return SteamInventoryClient()
