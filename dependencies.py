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

"""FastAPI dependencies for the fulfillment server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Database session management (Catalog and Transactions DBs).
- External collaborators (payment gateway, notification sender).
- Service instantiation for the checkout, fulfillment and webhook routes.
- The acting user, passed explicitly from the `X-Actor-Id` header.
"""

import datetime
from typing import AsyncGenerator, Optional

import config
import db
from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from services import payment_gateway
from services.checkout_service import CheckoutService
from services.external_fulfillment import ExternalFulfillmentService
from services.fulfillment_service import FulfillmentService
from services.notification_service import HttpNotificationSender
from services.notification_service import NotificationSender
from services.notification_service import NotificationService
from services.order_materializer import OrderMaterializer
from services.order_service import OrderService
from services.payment_gateway import PaymentGateway
from services.payment_reconciliation import PaymentReconciliationService
from services.provisioning_ledger import ProvisioningLedger
from sqlalchemy.ext.asyncio import AsyncSession


async def actor_id(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
) -> Optional[str]:
  """Extracts the acting user, if the caller identified one."""
  return x_actor_id or None


async def get_catalog_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for Catalog DB session."""
  async with db.manager.catalog_session_factory() as session:
    yield session


async def get_transactions_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for Transactions DB session."""
  async with db.manager.transactions_session_factory() as session:
    yield session


def get_payment_gateway() -> PaymentGateway:
  """Dependency provider for the payment gateway."""
  api_key = config.get_flag("stripe_api_key")
  if not api_key:
    raise HTTPException(
        status_code=500, detail="Payment gateway not configured"
    )
  return payment_gateway.manager.get_gateway(
      api_key, timeout=config.get_flag("gateway_timeout_seconds")
  )


def get_notification_sender() -> NotificationSender:
  """Dependency provider for the notification sender."""
  relay_url = config.get_flag("notification_relay_url")
  if not relay_url:
    raise HTTPException(
        status_code=500, detail="Notification relay not configured"
    )
  return HttpNotificationSender(
      relay_url, timeout=config.get_flag("notification_timeout_seconds")
  )


def get_order_service(
    transactions_session: AsyncSession = Depends(get_transactions_db),
) -> OrderService:
  """Dependency provider for OrderService."""
  return OrderService(transactions_session)


def get_provisioning_ledger(
    transactions_session: AsyncSession = Depends(get_transactions_db),
) -> ProvisioningLedger:
  """Dependency provider for ProvisioningLedger."""
  return ProvisioningLedger(transactions_session)


def get_fulfillment_service(
    catalog_session: AsyncSession = Depends(get_catalog_db),
    transactions_session: AsyncSession = Depends(get_transactions_db),
    ledger: ProvisioningLedger = Depends(get_provisioning_ledger),
) -> FulfillmentService:
  """Dependency provider for FulfillmentService."""
  return FulfillmentService(catalog_session, transactions_session, ledger)


def get_notification_service(
    catalog_session: AsyncSession = Depends(get_catalog_db),
    transactions_session: AsyncSession = Depends(get_transactions_db),
    sender: NotificationSender = Depends(get_notification_sender),
) -> NotificationService:
  """Dependency provider for NotificationService."""
  return NotificationService(catalog_session, transactions_session, sender)


def get_checkout_service(
    catalog_session: AsyncSession = Depends(get_catalog_db),
    transactions_session: AsyncSession = Depends(get_transactions_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    fulfillment_service: FulfillmentService = Depends(get_fulfillment_service),
    notification_service: NotificationService = Depends(
        get_notification_service
    ),
) -> CheckoutService:
  """Dependency provider for CheckoutService."""
  return CheckoutService(
      OrderMaterializer(
          transactions_session,
          default_currency=config.get_flag("default_currency"),
      ),
      PaymentReconciliationService(
          catalog_session,
          transactions_session,
          gateway,
          fulfillment_service,
          notification_service,
          claim_ttl=datetime.timedelta(
              seconds=config.get_flag("settlement_claim_ttl_seconds")
          ),
      ),
      transactions_session,
  )


def get_external_fulfillment_service(
    catalog_session: AsyncSession = Depends(get_catalog_db),
    transactions_session: AsyncSession = Depends(get_transactions_db),
) -> ExternalFulfillmentService:
  """Dependency provider for ExternalFulfillmentService."""
  return ExternalFulfillmentService(catalog_session, transactions_session)
