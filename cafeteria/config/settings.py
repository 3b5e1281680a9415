from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # 数据库配置
    database_url: str = "duckdb://./data/cafeteria.duckdb"

    # JWT配置
    jwt_secret_key: str = "change-me-cafeteria-orders-jwt-secret"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24 * 7  # 7天

    # API配置
    api_title: str = "School Cafeteria Orders API"
    api_version: str = "1.0.0"
    api_prefix: str = "/api/v1"

    # 开发模式
    debug: bool = False
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    # GetNet 支付网关配置
    getnet_login: str = ""
    getnet_secret: str = ""
    getnet_environment: str = "test"
    getnet_base_url: str = "https://checkout.getnet.cl"
    getnet_test_url: str = "https://checkout.test.getnet.cl"
    getnet_timeout_seconds: float = 15.0
    # 只在本地联调时关闭
    getnet_verify_signature: bool = True
    getnet_locale: str = "es_CL"

    # 网关回跳的前端地址
    app_public_url: str = "http://localhost:3000"
    currency: str = "CLP"

    # 价格表（最小货币单位）
    price_guardian_lunch: int = 5500
    price_guardian_snack: int = 5500
    price_staff_lunch: int = 4875
    price_staff_snack: int = 4875

    # 支付对账
    manual_reconcile_after_seconds: int = 30
    simulate_on_return: bool = False

    # 订单列表缓存
    order_cache_ttl_seconds: float = 60.0

    class Config:
        env_file = ".env"
        case_sensitive = False


# 全局设置实例
settings = Settings()
