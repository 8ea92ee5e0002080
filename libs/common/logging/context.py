"""Order-scoped logging context.

Every dispatch, schedule and reconciliation step runs on behalf of a single
order. The order id is kept in a context variable so that all log records
emitted while handling that order carry it, including records emitted by
asyncio tasks spawned from the handler.

Example:
    >>> from libs.common.logging.context import order_context, get_order_id
    >>> with order_context("1001"):
    ...     get_order_id()
    '1001'
    >>> get_order_id() is None
    True
"""

import contextvars
from types import TracebackType

# Context variable for storing the order id in async contexts
_order_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "order_id", default=None
)


def get_order_id() -> str | None:
    """Get the order id bound to the current context, if any."""
    return _order_id_var.get()


def set_order_id(order_id: str) -> None:
    """Bind an order id to the current context.

    Raises:
        ValueError: If order_id is empty
    """
    if not order_id:
        raise ValueError("Order ID cannot be empty")
    _order_id_var.set(order_id)


def clear_order_id() -> None:
    """Remove the order id from the current context."""
    _order_id_var.set(None)


class order_context:  # noqa: N801 - used like a function
    """Context manager for scoped order id binding.

    Restores whatever order id was bound before entering, so nested
    contexts (e.g. restore replaying many orders) behave as expected.

    Args:
        order_id: Order id to bind. ``None`` leaves the context unchanged.
    """

    def __init__(self, order_id: str | None) -> None:
        self.order_id = order_id
        self._token: contextvars.Token[str | None] | None = None

    def __enter__(self) -> str | None:
        if self.order_id:
            self._token = _order_id_var.set(self.order_id)
        return self.order_id

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _order_id_var.reset(self._token)
            self._token = None
