"""
应用配置模块

使用 Pydantic Settings 管理所有环境变量和配置。
配置从项目根目录的 .env 文件读取，支持类型验证和默认值。

关键概念：
- BaseSettings: Pydantic 的配置基类，自动从环境变量读取
- computed_field: 计算字段，根据其他字段动态生成
- model_validator: 模型验证器，用于自定义验证逻辑
"""
import secrets  # 用于生成安全的随机字符串
import warnings  # 用于发出警告
from typing import Annotated, Any, Literal  # 类型注解工具

from pydantic import (
    AnyUrl,  # URL 类型验证
    BeforeValidator,  # 字段验证前的转换器
    HttpUrl,  # HTTP URL 类型验证
    PostgresDsn,  # PostgreSQL 连接字符串验证
    computed_field,  # 计算字段装饰器
    model_validator,  # 模型验证器装饰器
)
from pydantic_settings import BaseSettings, SettingsConfigDict  # 配置管理
from typing_extensions import Self  # 用于类型注解中引用自身类型


def parse_cors(v: Any) -> list[str] | str:
    """
    解析 CORS 配置值

    支持两种格式：
    1. 逗号分隔的字符串："http://localhost:3000,http://localhost:3001"
    2. 列表格式：["http://localhost:3000", "http://localhost:3001"]
    """
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    """
    应用配置类

    配置来源优先级：
    1. 环境变量（最高优先级）
    2. .env 文件
    3. 代码中的默认值（最低优先级）
    """
    model_config = SettingsConfigDict(
        env_file="../.env",
        env_ignore_empty=True,  # 忽略空的环境变量
        extra="ignore",  # 忽略未定义的额外字段
    )
    API_V1_STR: str = "/api/v1"  # API 版本前缀
    SECRET_KEY: str = secrets.token_urlsafe(32)  # 客户端 JWT 签名密钥（默认随机生成）
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    LOG_LEVEL: str = "INFO"  # 进程日志级别

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        """CORS 允许的源（去除尾部斜杠）"""
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    PROJECT_NAME: str = "paywall"
    SENTRY_DSN: HttpUrl | None = None

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "paywall"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> PostgresDsn:
        return PostgresDsn.build(
            scheme="postgresql+psycopg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # 产品 → 会员等级映射文件（为空时使用 paywall/config/default_config.json）
    PRODUCT_CONFIG_PATH: str | None = None

    # 支付渠道网关通用配置
    PROVIDER_TIMEOUT_SECONDS: float = 10.0  # 单次渠道请求超时（秒）
    PROVIDER_MAX_ATTEMPTS: int = 2  # 网络错误时的最大尝试次数
    ACCESS_TOKEN_REFRESH_SKEW_SECONDS: int = 60  # 渠道访问令牌提前刷新的时间（秒）

    # PayPal 配置
    PAYPAL_API_BASE: str = "https://api-m.paypal.com"  # PayPal REST API 地址
    PAYPAL_CLIENT_ID: str | None = None
    PAYPAL_SECRET: str | None = None
    PAYPAL_WEBHOOK_ID: str | None = None  # Webhook ID，用于签名校验
    PAYPAL_CANCEL_ON_PAYMENT_FAILURE: bool = True  # 扣款失败后自动取消订阅

    # Stripe 配置
    STRIPE_API_BASE: str = "https://api.stripe.com"
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None  # whsec_...，用于签名校验
    STRIPE_SIGNATURE_TOLERANCE_SECONDS: int = 300  # 签名时间戳容忍窗口（秒）

    # Google Play 配置
    GOOGLE_PLAY_PACKAGE_NAME: str | None = None
    GOOGLE_SERVICE_ACCOUNT_EMAIL: str | None = None
    GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY: str | None = None  # PEM 格式私钥
    GOOGLE_TOKEN_URI: str = "https://oauth2.googleapis.com/token"
    GOOGLE_PLAY_API_BASE: str = "https://androidpublisher.googleapis.com"
    GOOGLE_PLAY_INTEGRITY_API_BASE: str = "https://playintegrity.googleapis.com"
    GOOGLE_PLAY_REQUIRE_INTEGRITY: bool = False  # 客户端校验时是否强制 Play Integrity
    GOOGLE_PUBSUB_AUDIENCE: str | None = None  # Pub/Sub 推送 OIDC token 的 audience
    GOOGLE_PUBSUB_SERVICE_ACCOUNT: str | None = None  # 推送 token 中期望的 email

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        检查敏感配置是否使用了默认值

        本地环境只警告，其他环境直接报错。
        """
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    def _check_required_secret(self, var_name: str, value: str | None) -> None:
        """
        检查推送验签配置是否缺失

        本地环境缺失时跳过验签（只警告），其他环境直接报错。
        """
        if value:
            return
        message = f"{var_name} is not set, webhook signatures cannot be verified."
        if self.ENVIRONMENT == "local":
            warnings.warn(message, stacklevel=1)
        else:
            raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("SECRET_KEY", self.SECRET_KEY)
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        self._check_default_secret("PAYPAL_SECRET", self.PAYPAL_SECRET)
        self._check_default_secret("STRIPE_WEBHOOK_SECRET", self.STRIPE_WEBHOOK_SECRET)

        self._check_required_secret("STRIPE_WEBHOOK_SECRET", self.STRIPE_WEBHOOK_SECRET)
        self._check_required_secret("PAYPAL_WEBHOOK_ID", self.PAYPAL_WEBHOOK_ID)
        self._check_required_secret("GOOGLE_PUBSUB_AUDIENCE", self.GOOGLE_PUBSUB_AUDIENCE)

        return self


# 创建全局配置实例，整个应用共享
settings = Settings()  # type: ignore
