class ReconciliationError(RuntimeError):
    pass


class InvalidInput(ReconciliationError):
    """Malformed payment event. Rejected before any store access."""


class LookupTimeout(ReconciliationError):
    pass


class LookupUnavailable(ReconciliationError):
    pass


class ConcurrentClaimLost(ReconciliationError):
    def __init__(self, collection_id: str) -> None:
        super().__init__(f"collection {collection_id} was claimed concurrently")
        self.collection_id = collection_id


class PaymentAlreadyApplied(ReconciliationError):
    def __init__(self, payment_ref: str) -> None:
        super().__init__(f"payment {payment_ref} is already applied to a collection")
        self.payment_ref = payment_ref


class DuplicateOutcome(ReconciliationError):
    def __init__(self, payment_ref: str) -> None:
        super().__init__(f"payment {payment_ref} already has a final outcome")
        self.payment_ref = payment_ref
