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

"""Enumerations for the order fulfillment server.

This module defines the enums used throughout the server application to
represent the state of checkout sessions, orders, order items and external
fulfillments, as well as organization-level fulfillment configuration and
price charge types.
"""

import enum


class CheckoutStatus(str, enum.Enum):
  STARTED = "started"
  CLOSED = "closed"
  FAILED = "failed"


class IntentType(str, enum.Enum):
  PAYMENT = "payment"
  SETUP = "setup"
  FREE = "free"


class OrderStatus(str, enum.Enum):
  PENDING = "pending"
  COMPLETED = "completed"
  # The provider may have charged the payer but settlement did not finish
  ON_HOLD = "on_hold"
  CANCELLED = "cancelled"


class FulfillmentStatus(str, enum.Enum):
  PENDING = "pending"
  PROCESSING = "processing"
  PARTIALLY_FULFILLED = "partially_fulfilled"
  FULFILLED = "fulfilled"
  CANCELLED = "cancelled"
  FAILED = "failed"
  ON_HOLD = "on_hold"
  UNPROVISIONABLE = "unprovisionable"


class FulfillmentMethod(str, enum.Enum):
  """How an organization wants completed orders fulfilled."""

  AUTOMATION = "automation"
  API = "api"
  MANUAL = "manual"
  EXTERNAL_WEBHOOK = "external_webhook"
  HYBRID = "hybrid"


class DeliveryMethod(str, enum.Enum):
  PHYSICAL_SHIPPING = "physical_shipping"
  DIGITAL_DOWNLOAD = "digital_download"
  EMAIL_DELIVERY = "email_delivery"
  API_PROVISIONING = "api_provisioning"
  MANUAL_PROVISION = "manual_provision"
  VIRTUAL_DELIVERY = "virtual_delivery"
  INSTANT_ACCESS = "instant_access"
  EXTERNAL_PLATFORM = "external_platform"


class ExternalPlatform(str, enum.Enum):
  """Third-party storefronts that report fulfillment through webhooks."""

  SHOPIFY = "shopify"
  ETSY = "etsy"
  CLICKFUNNELS = "clickfunnels"
  WOOCOMMERCE = "woocommerce"
  AMAZON = "amazon"
  CUSTOM = "custom"

  @property
  def signature_header(self) -> str:
    """Name of the header each platform signs its deliveries with."""
    return _SIGNATURE_HEADERS[self]


_SIGNATURE_HEADERS = {
    ExternalPlatform.SHOPIFY: "X-Shopify-Hmac-Sha256",
    ExternalPlatform.ETSY: "X-Etsy-Signature",
    ExternalPlatform.CLICKFUNNELS: "X-ClickFunnels-Signature",
    ExternalPlatform.WOOCOMMERCE: "X-WC-Webhook-Signature",
    ExternalPlatform.AMAZON: "X-Amz-Sns-Message-Id",
    ExternalPlatform.CUSTOM: "X-Webhook-Signature",
}


class ChargeType(str, enum.Enum):
  ONE_TIME = "one_time"
  RECURRING = "recurring"
  TIERED = "tiered"
  VOLUME = "volume"
  GRADUATED = "graduated"
  PACKAGE = "package"


class RenewInterval(str, enum.Enum):
  DAY = "day"
  WEEK = "week"
  MONTH = "month"
  YEAR = "year"


class MemberRole(str, enum.Enum):
  ADMIN = "admin"
  MEMBER = "member"


class PaymentErrorType(str, enum.Enum):
  """Classification of payment provider failures shown to payers."""

  CARD_EXPIRED = "card_expired"
  INSUFFICIENT_FUNDS = "insufficient_funds"
  CARD_DECLINED = "card_declined"
  CARD_BLOCKED = "card_blocked"
  INVALID_CARD = "invalid_card"
  GATEWAY_TIMEOUT = "gateway_timeout"
  PAYMENT_FAILED = "payment_failed"
