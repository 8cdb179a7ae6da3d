"""库存API专用的Pydantic模型和响应格式"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import List, Dict, Optional
from decimal import Decimal
from datetime import datetime

from app.models.stock_movements import MovementType
from app.models.low_stock_alerts import AlertSeverity
from app.schemas.base import BaseResponse


# ==================== 请求模型 ====================

class CreateInventoryItemRequest(BaseModel):
    """建立库存台账请求"""
    product_id: int = Field(..., gt=0, description="商品ID", examples=[1])
    sku: str = Field(..., min_length=1, max_length=64, description="SKU", examples=["SC-TSHIRT-001"])
    current_stock: int = Field(0, ge=0, description="初始库存")
    min_stock_level: int = Field(10, ge=0, description="最低库存（低库存告警阈值）")
    reorder_point: int = Field(5, ge=0, description="补货点（严重告警阈值）")
    max_stock_level: int = Field(1000, ge=0, description="最高库存")
    cost_price: Decimal = Field(Decimal("0"), ge=0, description="成本价")
    selling_price: Decimal = Field(Decimal("0"), ge=0, description="售价")
    supplier: Optional[str] = Field(None, max_length=128)
    location: Optional[str] = Field(None, max_length=128)

    @model_validator(mode="after")
    def check_levels(self):
        if self.reorder_point > self.min_stock_level:
            raise ValueError("补货点不能高于最低库存")
        if self.min_stock_level > self.max_stock_level:
            raise ValueError("最低库存不能高于最高库存")
        return self


class UpdateInventoryItemRequest(BaseModel):
    """修改库存台账请求（库存数量请使用调整接口）"""
    min_stock_level: Optional[int] = Field(None, ge=0)
    reorder_point: Optional[int] = Field(None, ge=0)
    max_stock_level: Optional[int] = Field(None, ge=0)
    cost_price: Optional[Decimal] = Field(None, ge=0)
    selling_price: Optional[Decimal] = Field(None, ge=0)
    supplier: Optional[str] = Field(None, max_length=128)
    location: Optional[str] = Field(None, max_length=128)


class AdjustStockRequest(BaseModel):
    """库存调整请求

    in / out 时 quantity 为变动数量；adjustment 时 quantity 为盘点后的库存。
    """
    type: MovementType = Field(..., description="调整类型: in / out / adjustment")
    quantity: int = Field(..., ge=0, description="数量")
    reason: str = Field(..., min_length=1, max_length=255, description="调整原因")
    reference: Optional[str] = Field(None, max_length=64, description="关联单号")
    notes: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def check_type(self):
        if self.type not in (MovementType.IN, MovementType.OUT, MovementType.ADJUSTMENT):
            raise ValueError("调整类型只能是 in / out / adjustment")
        if self.type != MovementType.ADJUSTMENT and self.quantity <= 0:
            raise ValueError("入库/出库数量必须大于 0")
        return self


class ReserveStockRequest(BaseModel):
    """预占库存请求"""
    product_id: int = Field(..., gt=0, description="商品ID", examples=[1])
    quantity: int = Field(..., gt=0, description="预占数量", examples=[2])
    order_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="订单号",
        examples=["SC-123456789"],
    )


class StockReductionItem(BaseModel):
    product_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)


class StockReductionRequest(BaseModel):
    """订单库存流转请求（预占转实扣 / 回补）"""
    items: List[StockReductionItem] = Field(..., min_length=1)
    reference: Optional[str] = Field(None, max_length=64, description="订单号")


class BatchStockQueryRequest(BaseModel):
    """批量查询库存请求"""
    product_ids: List[int] = Field(
        ...,
        min_length=1,
        max_length=100,
        description="商品ID列表",
        examples=[[1, 2, 3]],
    )


class CleanupRequest(BaseModel):
    """清理任务请求"""
    batch_size: int = Field(500, ge=1, le=10000, description="批处理大小", examples=[500])


class ResolveAlertRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1, max_length=64, description="处理人")


# ==================== 详细信息模型 ====================

class StockRecordSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    sku: Optional[str] = None
    current_stock: int
    reserved_stock: int
    available_stock: int
    min_stock_level: int
    reorder_point: int
    max_stock_level: int
    cost_price: Decimal
    selling_price: Decimal
    supplier: Optional[str] = None
    location: Optional[str] = None
    low_stock_flagged: bool
    last_restocked: Optional[datetime] = None
    last_sold: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StockMovementSchema(BaseModel):
    """库存流水详情"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    sku: Optional[str] = None
    type: MovementType
    quantity: int
    previous_stock: int
    new_stock: int
    previous_available: int
    new_available: int
    reason: str
    reference: Optional[str] = None
    actor: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class LowStockAlertSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    sku: Optional[str] = None
    current_stock: int
    min_stock_level: int
    severity: AlertSeverity
    is_resolved: bool
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime


class TopSellingProduct(BaseModel):
    product_id: int
    sku: Optional[str] = None
    name: str
    quantity_sold: int
    revenue: Decimal


class DailyMovement(BaseModel):
    date: str
    movements: int
    units: int


class InventoryStats(BaseModel):
    total_products: int
    total_value: Decimal
    low_stock_items: int
    out_of_stock_items: int
    recently_restocked: int
    top_selling_products: List[TopSellingProduct]
    stock_movements: List[DailyMovement]


# ==================== 响应模型 ====================

class StockResponse(BaseResponse):
    """单个商品库存响应"""
    product_id: int = Field(..., description="商品ID")
    available_stock: int = Field(..., ge=0, description="可用库存数量")


class BatchStockResponse(BaseResponse):
    """批量库存查询响应"""
    data: Dict[int, int] = Field(..., description="商品ID到库存数量的映射")


class OperationResponse(BaseResponse):
    """操作响应（预占、确认、释放）"""
    data: Optional[int] = Field(None, description="处理的记录数量")


class InventoryItemResponse(BaseResponse):
    data: StockRecordSchema


class InventoryListResponse(BaseResponse):
    data: List[StockRecordSchema]
    total: int


class StockMovementListResponse(BaseResponse):
    data: List[StockMovementSchema]
    total: int


class AlertListResponse(BaseResponse):
    data: List[LowStockAlertSchema]


class InventoryStatsResponse(BaseResponse):
    data: InventoryStats


class CleanupResponse(BaseResponse):
    """清理任务响应"""
    cleaned_count: Optional[int] = Field(None, ge=0, description="清理的记录数量")


class CeleryTaskResponse(BaseResponse):
    """Celery任务响应"""
    task_id: Optional[str] = Field(None, description="任务ID")


class TaskStatusResponse(BaseModel):
    """任务状态响应"""
    task_id: str = Field(..., description="任务ID")
    status: str = Field(..., description="任务状态描述")
    state: str = Field(..., description="任务状态码")


class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str = Field("healthy", description="服务状态")
    service: str = Field("storefront-inventory", description="服务名称")
    version: str = Field("1.0.0", description="服务版本")
    database: str = Field("unknown", description="数据库状态")
    redis: str = Field("unknown", description="Redis 状态")


class APIInfoResponse(BaseModel):
    """API信息响应"""
    message: str = Field("欢迎使用库存与订单履约服务", description="欢迎信息")
    docs: str = Field("/docs", description="API文档路径")
    health: str = Field("/health", description="健康检查路径")
