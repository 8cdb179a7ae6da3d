"""订单 API 路由"""

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query
from typing import Optional
import logging

from app.core.dependencies import get_order_service
from app.core.exceptions import AppError
from app.models.orders import OrderStatus
from app.schemas.order import (
    ConfirmPaymentRequest,
    CreateOrderRequest,
    FailPaymentRequest,
    GuestOrderRequest,
    OrderListResponse,
    OrderResponse,
    UpdateOrderStatusRequest,
)
from app.services.order_service import OrderService

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/orders",
    tags=["订单"],
    responses={
        400: {"description": "请求参数错误或商品不可售"},
        404: {"description": "订单不存在"},
        409: {"description": "库存不足"},
        500: {"description": "订单保存失败"},
        504: {"description": "下单处理超时"}
    }
)


@router.post(
    "",
    response_model=OrderResponse,
    status_code=201,
    summary="购物车下单",
    description="""使用当前用户的购物车下单。

    - 货到付款和钱包支付（cod / bkash / nagad / rocket）下单即扣减库存
    - 跳转支付（card / sslcommerz）下单只预占库存，支付回调后确认或释放
    - 任一商品库存不足时，已占用的库存全部回滚，不会生成订单
    - 下单成功后清空购物车
    """,
)
def create_order(
    request: CreateOrderRequest,
    user_id: str = Header(..., alias="X-User-Id", min_length=1, max_length=64),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.create_order_from_cart(user_id, request)
        return {"success": True, "message": "下单成功", "data": order}
    except (HTTPException, AppError):
        # 透传业务异常，由全局处理器渲染
        raise
    except Exception as e:
        logger.error(f"下单失败: user_id={user_id}, error={str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/guest", response_model=OrderResponse, status_code=201, summary="游客下单")
def create_guest_order(
    request: GuestOrderRequest,
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.create_order_from_guest_cart(request)
        return {"success": True, "message": "下单成功", "data": order}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"游客下单失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("", response_model=OrderListResponse, summary="订单列表")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = Query(None),
    service: OrderService = Depends(get_order_service)
):
    try:
        orders, total = service.list_orders(page, limit, status)
        return {"success": True, "data": orders, "total": total}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"查询订单列表失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/user/{user_id}", response_model=OrderListResponse, summary="用户订单")
def list_user_orders(
    user_id: str = Path(..., min_length=1, max_length=64),
    service: OrderService = Depends(get_order_service)
):
    try:
        orders = service.list_orders_by_user(user_id)
        return {"success": True, "data": orders, "total": len(orders)}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"查询用户订单失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{order_number}", response_model=OrderResponse, summary="订单详情")
def get_order(
    order_number: str = Path(..., max_length=32),
    service: OrderService = Depends(get_order_service)
):
    try:
        return {"success": True, "data": service.get_order(order_number)}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"查询订单失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.patch(
    "/{order_number}/status",
    response_model=OrderResponse,
    summary="更新订单状态",
    description="取消或退款时自动归还订单占用的库存，且只归还一次。",
)
def update_order_status(
    request: UpdateOrderStatusRequest,
    order_number: str = Path(..., max_length=32),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.update_order_status(order_number, request.status)
        return {"success": True, "message": "状态已更新", "data": order}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"更新订单状态失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{order_number}/payment/confirm", response_model=OrderResponse, summary="支付成功回调")
def confirm_payment(
    request: ConfirmPaymentRequest,
    order_number: str = Path(..., max_length=32),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.confirm_payment(order_number, request.transaction_id)
        return {"success": True, "message": "支付已确认", "data": order}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"支付确认失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{order_number}/payment/fail", response_model=OrderResponse, summary="支付失败回调")
def fail_payment(
    request: FailPaymentRequest,
    order_number: str = Path(..., max_length=32),
    service: OrderService = Depends(get_order_service)
):
    try:
        order = service.fail_payment(order_number, request.reason)
        return {"success": True, "message": "订单已取消", "data": order}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"支付失败处理出错: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
