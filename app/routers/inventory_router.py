"""库存管理 API 路由"""

from fastapi import APIRouter, Depends, HTTPException, Query, Path, Body
from typing import Optional
import logging

from app.core.dependencies import get_inventory_service
from app.core.exceptions import AppError
from app.services.inventory_service import InventoryService
from app.schemas.inventory_api import (
    AdjustStockRequest,
    AlertListResponse,
    BatchStockQueryRequest,
    BatchStockResponse,
    CeleryTaskResponse,
    CleanupResponse,
    CreateInventoryItemRequest,
    InventoryItemResponse,
    InventoryListResponse,
    InventoryStatsResponse,
    OperationResponse,
    ReserveStockRequest,
    ResolveAlertRequest,
    StockMovementListResponse,
    StockReductionRequest,
    StockResponse,
    TaskStatusResponse,
    UpdateInventoryItemRequest,
)
from app.schemas.base import BaseResponse
from tasks.inventory_tasks import cleanup_expired_reservations as celery_cleanup_task

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/inventory",
    tags=["库存管理"],
    responses={
        400: {"description": "请求参数错误"},
        404: {"description": "资源未找到"},
        409: {"description": "库存不足"},
        422: {"description": "请求验证失败"},
        429: {"description": "请求过于频繁"},
        500: {"description": "服务器内部错误"}
    }
)


# ==================== 库存查询 ====================

@router.get(
    "/stock/{product_id}",
    response_model=StockResponse,
    summary="查询商品库存",
    description="""查询指定商品的可用库存数量。

    **缓存策略：**
    - 首先查询缓存（Redis 不可用时使用内存缓存）
    - 缓存未命中则查询数据库
    - 查询结果缓存5分钟，库存变更时主动失效
    """,
)
def get_stock(
    product_id: int = Path(..., gt=0, description="商品ID", examples=[1]),
    service: InventoryService = Depends(get_inventory_service)
):
    """查询商品可用库存（带缓存优化）"""
    try:
        stock = service.get_product_stock(product_id)
        return {
            "success": True,
            "product_id": product_id,
            "available_stock": stock
        }
    except (HTTPException, AppError):
        # 透传业务异常，由全局处理器渲染
        raise
    except Exception as e:
        logger.error(f"查询库存失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/stock/batch",
    response_model=BatchStockResponse,
    summary="批量查询商品库存",
    description="单次最多查询100个商品，未建立库存台账的商品返回 0。",
)
def batch_get_stocks(
    request: BatchStockQueryRequest = Body(..., description="批量查询请求参数"),
    service: InventoryService = Depends(get_inventory_service)
):
    """批量查询商品库存"""
    try:
        stocks = service.batch_get_stocks(request.product_ids)
        return BatchStockResponse(success=True, data=stocks)
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"批量查询库存失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ==================== 库存台账维护 ====================

@router.get("/items", response_model=InventoryListResponse, summary="库存台账列表")
def list_inventory_items(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        items, total = service.list_inventory_items(page, limit)
        return {"success": True, "data": items, "total": total}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"查询库存台账失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/items", response_model=InventoryItemResponse, status_code=201, summary="建立库存台账")
def create_inventory_item(
    request: CreateInventoryItemRequest,
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        record = service.create_inventory_item(request)
        return {"success": True, "message": "创建成功", "data": record}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"创建库存台账失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/items/{product_id}", response_model=InventoryItemResponse, summary="库存台账详情")
def get_inventory_item(
    product_id: int = Path(..., gt=0),
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        return {"success": True, "data": service.get_inventory_item(product_id)}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"查询库存台账失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.patch("/items/{product_id}", response_model=InventoryItemResponse, summary="修改库存阈值与价格")
def update_inventory_item(
    request: UpdateInventoryItemRequest,
    product_id: int = Path(..., gt=0),
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        record = service.update_inventory_item(product_id, request)
        return {"success": True, "message": "更新成功", "data": record}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"更新库存台账失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/items/{product_id}/adjust",
    response_model=InventoryItemResponse,
    summary="库存调整",
    description="""管理端入库、出库和盘点。

    - **in**: 入库，quantity 为入库数量
    - **out**: 出库，可用库存不足时拒绝
    - **adjustment**: 盘点，quantity 为盘点后的实物库存，不能小于已预占数量
    """,
)
def adjust_stock(
    request: AdjustStockRequest,
    product_id: int = Path(..., gt=0),
    actor: str = Query("admin", max_length=64, description="操作人"),
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        record = service.adjust_stock(product_id, request, actor=actor)
        return {"success": True, "message": "调整成功", "data": record}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"库存调整失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/movements", response_model=StockMovementListResponse, summary="库存流水")
def get_stock_movements(
    product_id: Optional[int] = Query(None, gt=0),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        movements, total = service.get_stock_movements(product_id, page, limit)
        return {"success": True, "data": movements, "total": total}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"查询库存流水失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ==================== 低库存告警 ====================

@router.get("/alerts", response_model=AlertListResponse, summary="低库存告警")
def get_low_stock_alerts(
    resolved: bool = Query(False, description="是否查询已处理的告警"),
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        return {"success": True, "data": service.get_low_stock_alerts(resolved)}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"查询低库存告警失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/alerts/{alert_id}/resolve", response_model=BaseResponse, summary="处理低库存告警")
def resolve_low_stock_alert(
    request: ResolveAlertRequest,
    alert_id: int = Path(..., gt=0),
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        resolved = service.resolve_low_stock_alert(alert_id, request.resolved_by)
        return {
            "success": True,
            "message": "告警已处理" if resolved else "告警此前已处理",
        }
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"处理低库存告警失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/stats", response_model=InventoryStatsResponse, summary="库存统计")
def get_inventory_stats(service: InventoryService = Depends(get_inventory_service)):
    try:
        return {"success": True, "data": service.get_inventory_stats()}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"查询库存统计失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ==================== 预占 ====================

@router.post(
    "/reserve",
    response_model=OperationResponse,
    summary="预占库存",
    description="""预占指定商品的库存数量，防止超卖。

    **特点：**
    - 条件更新保证原子性，可用库存不足时返回 409
    - 预占在配置的时间后过期，由清理任务释放
    - 同一订单同一商品只能预占一次
    """,
)
def reserve_stock(
    request: ReserveStockRequest,
    service: InventoryService = Depends(get_inventory_service)
):
    """预占库存（防超卖核心接口）"""
    try:
        service.reserve_stock(request.product_id, request.quantity, request.order_id)
        return {"success": True, "message": "预占成功", "data": 1}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"预占库存失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/confirm/{order_id}",
    response_model=OperationResponse,
    summary="确认库存扣减",
    description="支付成功后把订单的预占转为实际扣减，只处理状态为 RESERVED 的预占记录。",
)
def confirm_stock(
    order_id: str = Path(..., description="订单号", examples=["SC-123456789"]),
    service: InventoryService = Depends(get_inventory_service)
):
    """确认库存扣减（支付成功后调用）"""
    try:
        count = service.confirm_reservations(order_id)
        if count == 0:
            raise HTTPException(status_code=404, detail="未找到有效的预占记录")
        return {"success": True, "message": "确认成功", "data": count}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"确认库存失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/release/{order_id}",
    response_model=OperationResponse,
    summary="释放预占库存",
    description="订单取消或超时时释放预占，归还可用库存。",
)
def release_stock(
    order_id: str = Path(..., description="订单号", examples=["SC-123456789"]),
    service: InventoryService = Depends(get_inventory_service)
):
    """释放预占库存（归还给可用库存）"""
    try:
        count = service.release_reservations(order_id)
        if count == 0:
            raise HTTPException(status_code=404, detail="未找到有效的预占记录")
        return {"success": True, "message": "释放成功", "data": count}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"释放库存失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ==================== 订单库存流转 ====================

@router.post("/orders/reduce", response_model=OperationResponse, summary="订单预占转实扣")
def process_order_stock_reduction(
    request: StockReductionRequest,
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        items = [item.model_dump() for item in request.items]
        count = service.process_order_stock_reduction(items, reference=request.reference)
        return {"success": True, "message": "扣减成功", "data": count}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"订单库存扣减失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/orders/restore", response_model=OperationResponse, summary="订单库存回补")
def restore_order_stock(
    request: StockReductionRequest,
    service: InventoryService = Depends(get_inventory_service)
):
    try:
        items = [item.model_dump() for item in request.items]
        count = service.restore_order_stock(items, reference=request.reference)
        return {"success": True, "message": "回补完成", "data": count}
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"订单库存回补失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ==================== 过期预占清理 ====================

@router.post("/cleanup/manual", response_model=CleanupResponse)
def manual_cleanup(
    batch_size: int = Query(500, ge=1, le=10000),
    service: InventoryService = Depends(get_inventory_service)
):
    """手动触发清理任务（API 直接调用 Service）"""
    try:
        count = service.cleanup_expired_reservations(batch_size)
        return {
            "success": True,
            "message": "手动清理完成",
            "cleaned_count": count
        }
    except (HTTPException, AppError):
        raise
    except Exception as e:
        logger.error(f"手动清理失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/cleanup/celery", response_model=CeleryTaskResponse)
def celery_cleanup(batch_size: int = Query(500, ge=1, le=10000)):
    """触发 Celery 异步清理任务"""
    try:
        task = celery_cleanup_task.delay(batch_size)
        return {
            "success": True,
            "message": "已提交异步清理任务",
            "task_id": task.id
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Celery 任务提交失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/cleanup/status/{task_id}", response_model=TaskStatusResponse)
def get_cleanup_status(task_id: str):
    """查询 Celery 任务执行状态"""
    try:
        from celery_app import app
        task = app.AsyncResult(task_id)

        if task.state == 'PENDING':
            status = "任务等待中"
        elif task.state == 'SUCCESS':
            status = f"任务完成: {task.result}"
        elif task.state == 'FAILURE':
            status = f"任务失败: {str(task.info)}"
        else:
            status = f"任务状态: {task.state}"

        return {
            "task_id": task_id,
            "status": status,
            "state": task.state
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"查询任务状态失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
