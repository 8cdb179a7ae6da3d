"""库存相关的 Celery 任务"""

from celery_app import app
from app.db.session import SessionLocal
from app.core.exceptions import LockConflict
from app.services.alert_service import AlertService
from app.services.inventory_service import InventoryService
from app.core.redis import app_cache, redlock
import logging

logger = logging.getLogger(__name__)

@app.task(name='tasks.inventory.confirm_reservations')
def confirm_reservations(order_id: str):
    """支付回调异步确认：把订单的预占转为实际扣减

    Args:
        order_id: 订单号
    """
    db = SessionLocal()
    try:
        service = InventoryService(db, app_cache, redlock)
        count = service.confirm_reservations(order_id)
        logger.info(f"确认订单预占: {order_id}, count={count}")
        return {"status": "success", "order_id": order_id, "confirmed": count}
    except Exception as e:
        logger.error(f"确认订单预占失败: {order_id}, error: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

@app.task(name='tasks.inventory.cleanup_expired_reservations')  
def cleanup_expired_reservations(batch_size: int = 500):
    """清理过期的预占记录
    
    Args:
        batch_size: 批处理大小，默认500条
    
    Returns:
        清理的记录数量描述
    """
    db = SessionLocal()
    try:
        service = InventoryService(db, app_cache, redlock)
        count = service.cleanup_expired_reservations(batch_size)
        result = f"成功清理 {count} 条过期预占记录"
        logger.info(result)
        return result
    except LockConflict:
        # 其他 worker 正在清理，本次跳过
        logger.info("清理任务已在其他 worker 执行，跳过")
        return "跳过：已有清理任务在执行"
    except Exception as e:
        logger.error(f"清理过期预占任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

@app.task(name='tasks.inventory.scan_low_stock')
def scan_low_stock():
    """低库存巡检：对所有库存记录重新评估告警"""
    db = SessionLocal()
    try:
        created = AlertService(db).scan_low_stock()
        logger.info(f"低库存巡检完成，新增 {created} 条告警")
        return created
    except Exception as e:
        logger.error(f"低库存巡检失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

# 导出任务
__all__ = [
    'confirm_reservations',
    'cleanup_expired_reservations', 
    'scan_low_stock'
]
