"""
Error taxonomy shared by services and routers.

Services raise these; `main.py` turns any `PosError` into a JSON response
with the error's status code.
"""

from fastapi import status


class PosError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(PosError):
    """Bad input: missing field, wrong type/location combination, non-positive quantity."""
    status_code = status.HTTP_400_BAD_REQUEST


class InsufficientStockError(ValidationError):
    def __init__(self, location_id, product_id, requested: int, available: int):
        self.location_id = location_id
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id} at location {location_id}. "
            f"Available={available} requested={requested}"
        )


class PermissionDeniedError(PosError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(PosError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(PosError):
    """Optimistic-concurrency retries exhausted, or a duplicate unique value."""
    status_code = status.HTTP_409_CONFLICT


class TransportError(PosError):
    """The backing store could not be reached."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
