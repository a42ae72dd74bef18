# exceptions.py
"""
Typed business errors of the POS back office.

Every error is a ``ValueError`` (the services historically raised plain
``ValueError`` with a message) and carries a machine-readable ``code`` plus an
HTTP ``status_code`` used by the exception handler in ``main.py``.

    PosError
    |
    +-- DayClosedError, DayAlreadyOpenError, OpenDocumentsError,
    |   AccountingAlreadyStartedError
    +-- ShiftAlreadyOpenError, NoActiveShiftError, ShiftMismatchError,
    |   OrdersStillProcessingError
    +-- OrderNotFoundError, OrderNotProcessingError, TableAlreadyReservedError,
    |   InvalidDiscountError, InvalidOrderTypeError
    +-- ProductNotFoundError, InvalidProductTypeError, CyclicRecipeError,
    |   InvalidQuantityError, InsufficientStockError
    +-- DocumentNotFoundError, InvoiceAlreadyClosedError, DocumentStillOpenError
    +-- StatusNotificationError  (infrastructure, safe to retry)
"""


class PosError(ValueError):
    code = "POS_ERROR"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# --- Accounting day ---

class DayClosedError(PosError):
    code = "DAY_CLOSED"
    status_code = 409

    def __init__(self, message: str = "The accounting day must be opened first"):
        super().__init__(message)


class DayAlreadyOpenError(PosError):
    code = "DAY_ALREADY_OPEN"
    status_code = 409

    def __init__(self, snapshot_id: int):
        self.snapshot_id = snapshot_id
        super().__init__(f"Day #{snapshot_id} is already open")


class AccountingAlreadyStartedError(PosError):
    code = "ACCOUNTING_ALREADY_STARTED"
    status_code = 409

    def __init__(self, message: str = "Accounting can only be started on the very first day"):
        super().__init__(message)


class OpenDocumentsError(PosError):
    """Day close attempted while stock documents or shifts are still open."""
    code = "OPEN_DOCUMENTS"
    status_code = 409

    def __init__(self, open_kinds: list[str]):
        self.open_kinds = open_kinds
        super().__init__(f"Close these first: {', '.join(open_kinds)}")


# --- Shifts ---

class ShiftAlreadyOpenError(PosError):
    code = "SHIFT_ALREADY_OPEN"
    status_code = 409

    def __init__(self, shift_id: int | None = None):
        self.shift_id = shift_id
        if shift_id is None:
            super().__init__("Another shift is already open")
        else:
            super().__init__(f"Shift #{shift_id} is already open. Close it first.")


class NoActiveShiftError(PosError):
    code = "NO_ACTIVE_SHIFT"
    status_code = 409

    def __init__(self, message: str = "No active shift found"):
        super().__init__(message)


class ShiftMismatchError(PosError):
    code = "SHIFT_MISMATCH"
    status_code = 409

    def __init__(self, given_shift_id, current_shift_id):
        self.given_shift_id = given_shift_id
        self.current_shift_id = current_shift_id
        super().__init__(f"Shift #{given_shift_id} is not the current shift ({current_shift_id})")


class OrdersStillProcessingError(PosError):
    code = "ORDERS_STILL_PROCESSING"
    status_code = 409

    def __init__(self, order_ids: list[int]):
        self.order_ids = order_ids
        super().__init__(f"Shift cannot be ended, orders still in progress: {order_ids}")


# --- Orders ---

class OrderNotFoundError(PosError):
    code = "ORDER_NOT_FOUND"
    status_code = 404

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order #{order_id} not found")


class OrderNotProcessingError(PosError):
    """Illegal status transition for the order."""
    code = "ORDER_NOT_PROCESSING"
    status_code = 409

    def __init__(self, order_id: int, status: str, action: str):
        self.order_id = order_id
        self.status = status
        self.action = action
        super().__init__(f"Order #{order_id} is {status}, cannot {action}")


class TableAlreadyReservedError(PosError):
    code = "TABLE_ALREADY_RESERVED"
    status_code = 409

    def __init__(self, table_number: str, order_id: int):
        self.table_number = table_number
        self.order_id = order_id
        super().__init__(f"Table {table_number} is reserved by order #{order_id}")


class InvalidDiscountError(PosError):
    code = "INVALID_DISCOUNT"
    status_code = 422


class InvalidOrderTypeError(PosError):
    code = "INVALID_ORDER_TYPE"
    status_code = 422


# --- Products and stock ---

class ProductNotFoundError(PosError):
    code = "PRODUCT_NOT_FOUND"
    status_code = 404

    def __init__(self, product_ids):
        if not isinstance(product_ids, (list, tuple, set)):
            product_ids = [product_ids]
        self.product_ids = list(product_ids)
        super().__init__(f"Product(s) not found: {', '.join(str(p) for p in self.product_ids)}")


class InvalidProductTypeError(PosError):
    code = "INVALID_PRODUCT_TYPE"
    status_code = 422


class CyclicRecipeError(PosError):
    code = "CYCLIC_RECIPE"
    status_code = 422

    def __init__(self, cycle: list[int]):
        self.cycle = cycle
        super().__init__(f"Recipe cycle detected: {' -> '.join(str(p) for p in cycle)}")


class InvalidQuantityError(PosError):
    code = "INVALID_QUANTITY"
    status_code = 422


class InsufficientStockError(PosError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, product_id: int, available, required):
        self.product_id = product_id
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient stock for product #{product_id}. Available: {available}, required: {required}"
        )


# --- Stock documents ---

class DocumentNotFoundError(PosError):
    code = "DOCUMENT_NOT_FOUND"
    status_code = 404

    def __init__(self, kind: str, doc_id: int):
        self.kind = kind
        self.doc_id = doc_id
        super().__init__(f"{kind} #{doc_id} not found")


class InvoiceAlreadyClosedError(PosError):
    code = "DOCUMENT_ALREADY_CLOSED"
    status_code = 409

    def __init__(self, kind: str, doc_id: int):
        self.kind = kind
        self.doc_id = doc_id
        super().__init__(f"{kind} #{doc_id} is already closed")


class DocumentStillOpenError(PosError):
    code = "DOCUMENT_STILL_OPEN"
    status_code = 409

    def __init__(self, kind: str, doc_id: int):
        self.kind = kind
        self.doc_id = doc_id
        super().__init__(f"{kind} #{doc_id} must be closed before creating a new one")


# --- Infrastructure ---

class StatusNotificationError(PosError):
    code = "STATUS_NOTIFICATION_FAILED"
    status_code = 502
