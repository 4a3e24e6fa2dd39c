#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Custom exceptions for the order fulfillment server."""

from typing import Any, Dict, Optional


class ServiceError(Exception):
  """Base class for all server exceptions."""

  def __init__(
      self,
      message: str,
      code: str = "INTERNAL_ERROR",
      status_code: int = 500,
      details: Optional[Dict[str, Any]] = None,
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    self.details = details
    super().__init__(self.message)


class ResourceNotFoundError(ServiceError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str):
    super().__init__(message, code="RESOURCE_NOT_FOUND", status_code=404)


class InvalidRequestError(ServiceError):
  """Raised when the request is invalid (e.g. missing fields)."""

  def __init__(
      self,
      message: str,
      code: str = "INVALID_REQUEST",
      status_code: int = 400,
  ):
    super().__init__(message, code=code, status_code=status_code)


class CustomerRequiredError(InvalidRequestError):
  """Raised when neither the order nor its checkout session has a customer."""

  def __init__(self, message: str = "Customer required for payment processing"):
    super().__init__(message, code="CUSTOMER_REQUIRED", status_code=422)


class EmptyOrderError(InvalidRequestError):
  """Raised when a subscription is requested for an order without items."""

  def __init__(self, message: str = "No items found in the order"):
    super().__init__(message, code="EMPTY_ORDER", status_code=422)


class FulfillmentQuantityError(InvalidRequestError):
  """Raised when a fulfillment update would over-fulfill an order item."""

  def __init__(self, message: str):
    super().__init__(
        message, code="INVALID_FULFILLMENT_QUANTITY", status_code=422
    )


class ConcurrentUpdateError(ServiceError):
  """Raised when a row changed underneath an in-flight write."""

  def __init__(self, message: str):
    super().__init__(message, code="CONCURRENT_UPDATE", status_code=409)


class PaymentFailedError(ServiceError):
  """Raised when payment processing fails.

  Attributes:
    error_type: Classified failure reason (see enums.PaymentErrorType).
    provider_error: The raw error payload returned by the payment provider.
    retryable: Whether the payer can retry the same checkout.
  """

  def __init__(
      self,
      message: str,
      error_type: str = "payment_failed",
      provider_error: Optional[Dict[str, Any]] = None,
      code: str = "PAYMENT_FAILED",
      status_code: int = 402,
      retryable: bool = True,
  ):
    self.error_type = error_type
    self.provider_error = provider_error or {}
    self.retryable = retryable
    super().__init__(
        message,
        code=code,
        status_code=status_code,
        details={
            "error_type": error_type,
            "provider_error": self.provider_error,
            "retryable": retryable,
        },
    )


class PaymentGatewayError(ServiceError):
  """Raised when the payment provider rejects or fails a request."""

  def __init__(
      self,
      message: str,
      provider_code: Optional[str] = None,
      code: str = "PAYMENT_GATEWAY_ERROR",
      status_code: int = 502,
  ):
    self.provider_code = provider_code
    super().__init__(message, code=code, status_code=status_code)


class PaymentGatewayTimeoutError(PaymentGatewayError):
  """Raised when the payment provider cannot be reached in time."""

  def __init__(self, message: str):
    super().__init__(
        message, code="PAYMENT_GATEWAY_TIMEOUT", status_code=504
    )


class NotificationDeliveryError(ServiceError):
  """Raised when a notification could not be handed to the mail relay."""

  def __init__(self, message: str):
    super().__init__(message, code="NOTIFICATION_FAILED", status_code=502)
