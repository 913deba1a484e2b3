"""
订单/交易查询路由（只读）
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_order_service
from application.dtos.base import PaginationParams
from application.dtos.payments import OrderDTO, RefundEligibilityDTO, TransactionDTO
from application.services.order_service import OrderQueryService
from core.response import PaginatedData, Response as ApiResponse, paginated_response, success_response
from domain.payment.entity import OrderStatus


router = APIRouter(tags=["Orders"])


@router.get(
    "/orders",
    summary="获取订单列表",
    response_model=ApiResponse[PaginatedData[OrderDTO]],
)
async def list_orders(
    params: PaginationParams = Depends(),
    status: Optional[OrderStatus] = Query(None, description="按订单状态筛选"),
    customer_id: Optional[str] = Query(None, description="按客户ID筛选"),
    service: OrderQueryService = Depends(get_order_service),
):
    orders, total = await service.list_orders(
        skip=params.skip, limit=params.limit, status=status, customer_id=customer_id
    )
    return paginated_response(items=orders, total=total, page=params.page, size=params.limit)


@router.get("/orders/{order_id}", summary="获取订单详情（含交易记录）", response_model=ApiResponse[OrderDTO])
async def get_order(
    order_id: str,
    include_transactions: bool = Query(True),
    service: OrderQueryService = Depends(get_order_service),
):
    """order_id 可以是内部ID或订单号 ORD_..."""
    order = await service.get_order(order_id, include_transactions=include_transactions)
    return success_response(data=order)


@router.get(
    "/orders/{order_id}/transactions",
    summary="获取订单交易记录",
    response_model=ApiResponse[list[TransactionDTO]],
)
async def list_order_transactions(
    order_id: str,
    service: OrderQueryService = Depends(get_order_service),
):
    return success_response(data=await service.list_transactions(order_id))


@router.get(
    "/transactions/{transaction_id}/refund-eligibility",
    summary="查询退款资格",
    response_model=ApiResponse[RefundEligibilityDTO],
)
async def refund_eligibility(
    transaction_id: str,
    service: OrderQueryService = Depends(get_order_service),
):
    return success_response(data=await service.refund_eligibility(transaction_id))
