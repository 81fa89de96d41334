"""
Order Service — エラー定義

業務エラーは種類ごとに別クラスにする。呼び出し側はメッセージ文字列ではなく
型で分岐できる。status_code は HTTP 層がそのまま使う。

通知・テレメトリの失敗はここには無い。それぞれの層で吸収され、
業務処理の結果には現れない。
"""


class OrderServiceError(Exception):
    status_code = 500


class UserNotFound(OrderServiceError):
    """ユーザー検証に失敗した (注文は保存されない)"""

    status_code = 404

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class ProductResolutionFailed(OrderServiceError):
    """商品情報を取得できなかった (注文全体を中断する)"""

    status_code = 502

    def __init__(self, product_id: int, reason: str):
        self.product_id = product_id
        self.reason = reason
        super().__init__(f"Failed to resolve product {product_id}: {reason}")


class OrderNotFound(OrderServiceError):
    status_code = 404

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")
