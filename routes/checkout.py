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

"""Checkout completion routes."""

from typing import Optional

import dependencies
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from models import CompleteCheckoutRequest
from models import OrderResponse
from services.checkout_service import CheckoutService

router = APIRouter()


@router.post(
    "/checkout-sessions/{id}/complete",
    response_model=OrderResponse,
    operation_id="complete_checkout",
)
async def complete_checkout(
    checkout_session_id: str = Path(..., alias="id"),
    request: Optional[CompleteCheckoutRequest] = Body(None),
    actor_id: Optional[str] = Depends(dependencies.actor_id),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> OrderResponse:
  """Complete a checkout session and settle its order."""
  confirmation_token = request.confirmation_token if request else None
  return await checkout_service.complete_checkout(
      checkout_session_id, confirmation_token, actor_id
  )
