"""課金イベントパイプラインの例外"""


class BillingEventError(Exception):
    """基底例外"""


class InvalidSignature(BillingEventError):
    """Webhook署名が欠落または不一致 (400)"""


class WebhookConfigurationError(BillingEventError):
    """Webhook署名シークレット未設定 (500)"""


class MalformedPayload(BillingEventError):
    """既知のイベント種別だが、どの既知の形式にも一致しない"""


class BrokerUnavailable(BillingEventError):
    """ブローカー接続不可。再接続ループで処理し、呼び出し元には伝播しない"""


class UnresolvableReference(BillingEventError):
    """プラン/購読の参照が解決できない。警告ログのみでイベント破棄"""


class DuplicateIdempotencyKey(BillingEventError):
    """冪等キー (外部参照) の重複。成功扱い"""


class MalformedMessage(BillingEventError):
    """キューメッセージのデコード失敗。ack して破棄"""


class StripeConfigurationError(BillingEventError):
    """Stripe APIキー未設定 (500)"""
