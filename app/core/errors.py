"""
交易核心的异常体系

  MarketError
  ├── ValidationError          输入不合法（缺价格、交易链接格式错误），未做任何修改
  ├── PreconditionFailed       状态/权限/余额/过期等前置条件不满足，未做任何修改
  │   ├── NotFoundError
  │   ├── PermissionDenied
  │   └── AssetStillHeldError  饰品仍在卖家 Steam 库存中，附带交易报价页面链接
  ├── ConflictError            并发竞争失败（物品/报价已被其他操作占用），刷新后重试
  ├── ExternalDependencyError  Steam 库存查询超时/出错，可重试，不代表否定结果
  └── FatalInvariantViolation  数据库状态与状态机假设矛盾，记录并等待对账

HTTP 层只负责把这些异常映射成状态码（见 app/api/routes/_errors.py）。
"""

from __future__ import annotations

from typing import Optional


class MarketError(Exception):
    """所有交易核心异常的基类"""

    status_code = 500
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "retryable": self.retryable}


class ValidationError(MarketError):
    status_code = 400


class PreconditionFailed(MarketError):
    status_code = 400


class NotFoundError(PreconditionFailed):
    status_code = 404


class PermissionDenied(PreconditionFailed):
    status_code = 403


class AssetStillHeldError(PreconditionFailed):
    """买家确认收货时，饰品仍在卖家库存里"""

    def __init__(self, message: str, *, link: Optional[str] = None):
        super().__init__(message, code="asset_still_held")
        self.link = link

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["link"] = self.link
        return data


class ConflictError(MarketError):
    status_code = 409


class ExternalDependencyError(MarketError):
    status_code = 503
    retryable = True


class FatalInvariantViolation(MarketError):
    status_code = 500
