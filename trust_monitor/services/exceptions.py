# trust_monitor/services/exceptions.py


class MonitorError(RuntimeError):
    """Base error for the trust monitor."""


class ChainReadError(MonitorError):
    """RPC call failed or timed out. Transient: the cycle carries on without this data."""


class PaymentVerificationError(MonitorError):
    """Submitted payment proof could not be accepted."""


class MonitorConfigError(MonitorError):
    """Required setting is missing or malformed. Fails only the request that needed it."""


class OrderNotFound(MonitorError):
    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id
