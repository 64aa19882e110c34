from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = "sqlite+aiosqlite:///./cs2_market.db"

    host: str = "0.0.0.0"
    port: int = 8000

    # Redis 投影缓存 + pub/sub（可选，不可用时全部回落到数据库）
    use_redis: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "cs2market:"
    trade_cache_ttl: int = 3600        # 单笔交易投影，秒
    user_trades_ttl: int = 300         # 用户活跃交易列表，秒

    # 交易规则
    platform_fee_rate: float = 0.025
    offer_ttl_hours: int = 48
    seller_response_hours: int = 24    # 卖家确认期限，同时用作 reserved_until
    trade_url_valid_days: int = 30
    default_currency_rate: float = 1.8  # USD → GEL

    # Steam 库存校验（买家确认收货前检查卖家库存）
    steam_inventory_check_enabled: bool = True
    steam_inventory_url: str = "https://steamcommunity.com/inventory/{steam_id}/730/2"
    steam_timeout: float = 15.0
    steam_max_retries: int = 3
    steam_login_secure: str = ""
    steam_session_id: str = ""

    # 定时任务（分钟）；cleanup_interval_minutes=0 表示不定时执行全量清理
    expire_interval_minutes: int = 10
    cleanup_interval_minutes: int = 0
    cleanup_on_startup: bool = False

    # 内存中保留的对账标记条数上限
    reconciliation_max_flags: int = 200


settings = Settings()
