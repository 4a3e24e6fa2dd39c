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

"""Classification of payment provider failures.

Provider errors arrive as free-form messages and codes. They are mapped onto a
small set of error types, each with a message that can be shown to the payer.
"""

import logging
from typing import Any, Dict, Optional

from enums import PaymentErrorType
from exceptions import PaymentFailedError

logger = logging.getLogger(__name__)

# Checked in order; the first matching keyword wins.
_ERROR_KEYWORDS = (
    (PaymentErrorType.CARD_EXPIRED, ("expired", "expiry")),
    (PaymentErrorType.INSUFFICIENT_FUNDS, ("insufficient", "funds", "balance")),
    (
        PaymentErrorType.CARD_DECLINED,
        ("declined", "decline", "rejected", "reject"),
    ),
    (PaymentErrorType.CARD_BLOCKED, ("blocked", "block", "restricted")),
    (PaymentErrorType.INVALID_CARD, ("invalid", "incorrect")),
)

_USER_MESSAGES = {
    PaymentErrorType.CARD_EXPIRED: (
        "Your card has expired. Please update your payment information."
    ),
    PaymentErrorType.INSUFFICIENT_FUNDS: (
        "Your card has insufficient funds. Please use a different payment"
        " method."
    ),
    PaymentErrorType.CARD_DECLINED: (
        "Your card was declined. Please check your card details or use a"
        " different card."
    ),
    PaymentErrorType.CARD_BLOCKED: (
        "Your card appears to be blocked. Please contact your bank or use a"
        " different card."
    ),
    PaymentErrorType.INVALID_CARD: (
        "The card information you provided is invalid. Please check and try"
        " again."
    ),
    PaymentErrorType.GATEWAY_TIMEOUT: (
        "We could not confirm your payment in time. Please try again."
    ),
}

_DEFAULT_MESSAGE = (
    "There was a problem processing your payment. Please try again or use a"
    " different payment method."
)

_SUCCESSFUL_SUBSCRIPTION_STATUSES = ("active", "trialing")


def classify_error(
    message: Optional[str], code: Optional[str] = None
) -> PaymentErrorType:
  """Maps a provider error message and code onto a PaymentErrorType."""
  haystack = f"{message or ''} {code or ''}".lower()
  for error_type, keywords in _ERROR_KEYWORDS:
    if any(keyword in haystack for keyword in keywords):
      return error_type
  return PaymentErrorType.PAYMENT_FAILED


def user_message(error_type: PaymentErrorType) -> str:
  return _USER_MESSAGES.get(error_type, _DEFAULT_MESSAGE)


def provider_error_details(error: Any) -> Dict[str, Any]:
  """Extracts the message and code of a provider error object."""
  if error is None:
    return {}
  return {
      "message": getattr(error, "message", None),
      "code": getattr(error, "code", None),
      "decline_code": getattr(error, "decline_code", None),
  }


def payment_failure(
    error: Any, fallback_message: Optional[str] = None
) -> PaymentFailedError:
  """Builds a classified PaymentFailedError from a provider error object.

  Args:
    error: The provider's `last_payment_error` / `last_setup_error`, or None.
    fallback_message: Message to classify when the provider sent no error.

  Returns:
    The exception to raise.
  """
  details = provider_error_details(error)
  error_type = classify_error(
      details.get("message") or fallback_message, details.get("code")
  )
  return PaymentFailedError(
      user_message(error_type),
      error_type=error_type.value,
      provider_error=details,
  )


def validate_subscription(subscription: Any) -> None:
  """Checks that a freshly created subscription actually got paid for.

  Args:
    subscription: The provider subscription, ideally with
      `latest_invoice.payment_intent` expanded.

  Raises:
    PaymentFailedError: If the subscription is not active/trialing or its
      first invoice payment did not succeed.
  """
  status = getattr(subscription, "status", None)
  if status not in _SUCCESSFUL_SUBSCRIPTION_STATUSES:
    logger.warning(
        "Subscription %s has status %s",
        getattr(subscription, "id", None),
        status,
    )
    raise payment_failure(None, f"Subscription status {status}")

  invoice = getattr(subscription, "latest_invoice", None)
  payment_intent = getattr(invoice, "payment_intent", None)
  if payment_intent is None or isinstance(payment_intent, str):
    # Trials and zero-amount invoices have nothing to collect.
    return
  if getattr(payment_intent, "status", None) != "succeeded":
    raise payment_failure(
        getattr(payment_intent, "last_payment_error", None),
        f"Payment intent status {payment_intent.status}",
    )
