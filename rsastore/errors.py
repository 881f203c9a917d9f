class StoreError(Exception):
    """Base class for storefront domain errors."""


class CheckoutError(StoreError):
    """Checkout input rejected; message is safe to show to the buyer."""


class ProductNotFoundError(CheckoutError):
    pass


class DuplicateInvoiceError(StoreError):
    """Invoice number collided with an existing order."""


class OrderNotPaidError(StoreError):
    pass
