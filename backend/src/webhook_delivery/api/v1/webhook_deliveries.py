"""Delivery status API for operators."""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_delivery.database import get_db
from webhook_delivery.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorResponse
from webhook_delivery.schemas.webhook_delivery import WebhookDeliveryList, WebhookDeliveryRead
from webhook_delivery.services.webhook_service import WebhookDeliveryService

router = APIRouter(
    tags=["Webhook Deliveries"],
    responses={
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
)


@router.get("/webhook-deliveries/{delivery_id}", response_model=WebhookDeliveryRead)
async def get_webhook_delivery(
    delivery_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> WebhookDeliveryRead:
    """
    Get the current state of one delivery.

    Returns status, attempt count, the sanitized last error and the next
    scheduled attempt. The payload and endpoint secret are never returned.
    """
    service = WebhookDeliveryService(db)
    delivery = await service.get_delivery_status(delivery_id)

    if delivery is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "code": ErrorCode.DELIVERY_NOT_FOUND,
                "message": f"Webhook delivery {delivery_id} not found",
                "remediation": REMEDIATION_HINTS[ErrorCode.DELIVERY_NOT_FOUND],
            },
        )

    return WebhookDeliveryRead.model_validate(delivery)


@router.get("/webhook-endpoints/{endpoint_id}/deliveries", response_model=WebhookDeliveryList)
async def list_endpoint_deliveries(
    endpoint_id: UUID,
    limit: int = Query(100, ge=1, le=500, description="Maximum number of deliveries"),
    db: AsyncSession = Depends(get_db),
) -> WebhookDeliveryList:
    """List the most recent deliveries of an endpoint, newest first."""
    service = WebhookDeliveryService(db)
    deliveries = await service.get_endpoint_deliveries(endpoint_id, limit=limit)

    return WebhookDeliveryList(
        items=[WebhookDeliveryRead.model_validate(d) for d in deliveries],
        total=len(deliveries),
        limit=limit,
    )
