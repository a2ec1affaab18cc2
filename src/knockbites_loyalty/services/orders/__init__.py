"""Order tracking and fulfillment transition exports."""

from .errors import (  # noqa: F401
    InvalidOrderTransitionError,
    OrderNotFoundError,
    OrderStateError,
    TransportError,
)
from .events import OrderEventHub, get_order_event_hub  # noqa: F401
from .state_machine import OrderStateMachine  # noqa: F401
from .tracking import (  # noqa: F401
    MergeOutcome,
    MergeResult,
    OrderStatusSynchronizer,
    OrderTrackingState,
    merge_order_state,
)
from .transports import HttpOrderTrackingTransport, InProcessOrderTransport  # noqa: F401
