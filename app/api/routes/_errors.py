"""交易核心异常 → HTTP 状态码"""

from __future__ import annotations

import logging

from fastapi import HTTPException

from app.core.errors import FatalInvariantViolation, MarketError

logger = logging.getLogger(__name__)


def handle_market_error(e: MarketError):
    if isinstance(e, FatalInvariantViolation):
        logger.critical("FatalInvariantViolation: %s", e.message)
    raise HTTPException(status_code=e.status_code, detail=e.to_dict())
