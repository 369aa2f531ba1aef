"""
自定义异常模块

定义应用特定的异常类，用于统一的错误处理。
所有业务异常都继承自 AppError，在 main.py 中有统一的异常处理器。

对账链路的异常分类：
- MalformedPayload: 推送体格式错误，不做任何状态变更，确认后丢弃
- SignatureInvalid: 签名校验失败，视为潜在攻击，直接拒绝
- ProviderUnavailable: 渠道暂不可用，确认推送但不占用幂等键
- UnsupportedNotification: 不支持的通知类型，确认后忽略
"""
from __future__ import annotations


class AppError(Exception):
    """
    应用自定义异常类

    - code: 业务错误码（用于前端区分不同错误）
    - message: 错误消息（用户友好的提示）
    - status_code: HTTP 状态码（400, 404, 500 等）

    使用示例：
        raise AppError(code=409101, message="Purchase belongs to another account", status_code=409)
    """

    def __init__(self, *, code: int, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class MalformedPayload(AppError):
    """推送体无法解析或缺少必需字段"""

    def __init__(self, detail: str) -> None:
        super().__init__(code=400101, message="Malformed payload", status_code=400)
        self.detail = detail


class SignatureInvalid(AppError):
    """推送签名或推送身份令牌校验失败"""

    def __init__(self, detail: str) -> None:
        super().__init__(code=401101, message="Invalid signature", status_code=401)
        self.detail = detail


class ProviderUnavailable(AppError):
    """
    渠道接口超时、网络错误或 5xx

    对客户端只暴露通用的"稍后重试"提示。
    """

    def __init__(self, detail: str) -> None:
        super().__init__(code=503101, message="Please retry later", status_code=503)
        self.detail = detail


class UnsupportedNotification(AppError):
    """测试通知、一次性商品通知或未知通知类型"""

    def __init__(self, kind: str) -> None:
        super().__init__(code=200101, message=f"Unsupported notification {kind}", status_code=200)
        self.kind = kind


def verification_rejected() -> AppError:
    """
    创建"购买校验被拒绝"异常（便捷函数）

    完整性校验失败时返回，不区分具体原因。
    """
    return AppError(code=403101, message="Purchase verification rejected", status_code=403)


def purchase_owned_by_other_account() -> AppError:
    return AppError(code=409101, message="Purchase belongs to another account", status_code=409)
