"""
共通例外と HTTP エラーエンベロープ

ビジネスルール違反は例外ではなく結果型 (gateway.orders.OrderTooLarge) で返す。
ここにあるのは依存先の障害と、メッセージ単位の恒久的な失敗。
"""


class OrderflowError(Exception):
    """このパッケージの例外の基底クラス"""


class ConfigError(OrderflowError):
    """設定値が不足している、または不正"""


class TransientDependencyError(OrderflowError):
    """キューや DB が一時的に使えない。呼び出し側がリトライを判断する。"""


class QueueError(TransientDependencyError):
    """キュー(Redis)操作の失敗"""


class MessageParseError(OrderflowError):
    """ペイロードが解析できない、または必須フィールドが欠けている"""

    def __init__(self, message: str, correlation_id: str | None = None):
        super().__init__(message)
        self.correlation_id = correlation_id


class UnknownPrincipalError(OrderflowError):
    """注文が参照するユーザーが存在しない"""

    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} does not exist")
        self.user_id = user_id


class ErrorCodes:
    VALIDATION_FAILED = "VALIDATION_FAILED"
    ORDER_TOO_LARGE = "ORDER_TOO_LARGE"
    INVALID_PRODUCT = "INVALID_PRODUCT"
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    NOT_FOUND = "NOT_FOUND"


def error_response(
    code: str,
    message: str,
    correlation_id: str | None = None,
    details=None,
) -> dict:
    """全サービス共通のエラーエンベロープを作る。"""
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    if correlation_id:
        error["correlationId"] = correlation_id
    return {"success": False, "error": error}
