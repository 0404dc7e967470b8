class ReceiptError(Exception):
    """Base class for errors raised while reconciling or saving a receipt."""


class ValidationError(ReceiptError, ValueError):
    """Submitted form data is incomplete or inconsistent. Nothing has been written."""


class InvalidDateError(ValidationError):
    """A subscription date could not be parsed."""


class PersistenceError(ReceiptError):
    """The receipt or the member update could not be stored."""
