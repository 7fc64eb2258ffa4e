class RedemptionError(Exception):
    """Base class for failures of a single redemption."""


class InvalidRequest(RedemptionError):
    pass


class InsufficientInventory(RedemptionError):
    def __init__(self, requested: int, available: int | None = None):
        self.requested = requested
        self.available = available
        if available is None:
            msg = f"not enough unused codes for {requested}"
        else:
            msg = (
                f"not enough unused codes: requested {requested}, "
                f"available {available}"
            )
        super().__init__(msg)


class DeliveryFailure(RedemptionError):
    pass


class PersistenceFailure(RedemptionError):
    pass
