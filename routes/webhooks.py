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

"""Inbound fulfillment webhooks from external platforms.

Signatures are recorded with the fulfillment but not verified here; that is
left to the transport in front of the server.
"""

import logging
from typing import Any, Dict

import dependencies
from enums import ExternalPlatform
from exceptions import ServiceError
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from fastapi import Request
from fastapi.responses import JSONResponse
from models import WebhookResponse
from services.external_fulfillment import ExternalFulfillmentService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/webhooks/{platform}/{organization_id}",
    response_model=WebhookResponse,
    operation_id="receive_fulfillment_webhook",
)
async def receive_fulfillment_webhook(
    request: Request,
    platform: ExternalPlatform = Path(...),
    organization_id: str = Path(...),
    payload: Dict[str, Any] = Body(...),
    service: ExternalFulfillmentService = Depends(
        dependencies.get_external_fulfillment_service
    ),
):
  """Record a fulfillment update pushed by an external platform."""
  headers = dict(request.headers)
  signature = request.headers.get(platform.signature_header)
  try:
    record = await service.reconcile_webhook(
        organization_id, platform, payload, signature, headers
    )
  except ServiceError:
    raise
  except Exception:  # pylint: disable=broad-exception-caught
    logger.exception(
        "Failed to process %s webhook for organization %s",
        platform.value,
        organization_id,
    )
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Webhook processing failed"},
    )

  return WebhookResponse(
      status="success",
      message="Webhook processed successfully",
      external_fulfillment_id=record.id,
  )
