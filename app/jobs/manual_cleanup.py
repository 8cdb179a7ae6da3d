"""库存清理本地执行脚本"""

import argparse
import logging
from sqlalchemy import select, func

from app.core.exceptions import LockConflict
from app.core.redis import app_cache, redlock
from app.db.base import utcnow
from app.db.session import SessionLocal
from app.models.inventory_reservations import InventoryReservation, ReservationStatus
from app.services.alert_service import AlertService
from app.services.inventory_service import InventoryService

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def count_expired(db) -> int:
    return db.execute(
        select(func.count())
        .select_from(InventoryReservation)
        .where(
            InventoryReservation.status == ReservationStatus.RESERVED,
            InventoryReservation.expired_at <= utcnow()
        )
    ).scalar_one()

def run_cleanup(batch_size: int = 500, dry_run: bool = False, scan_low_stock: bool = False):
    """执行库存清理
    
    Args:
        batch_size: 批处理大小
        dry_run: 是否为试运行模式（不实际执行清理）
        scan_low_stock: 清理后是否执行低库存巡检
    """
    db = SessionLocal()
    try:
        if dry_run:
            # 试运行模式：只统计待清理记录数量
            expired_count = count_expired(db)
            logger.info(f"试运行模式：发现 {expired_count} 条过期预占记录待清理")
            return expired_count

        service = InventoryService(db, app_cache, redlock)
        count = service.cleanup_expired_reservations(batch_size)
        logger.info(f"清理完成：成功清理 {count} 条过期预占记录")

        if scan_low_stock:
            created = AlertService(db).scan_low_stock()
            logger.info(f"低库存巡检完成：新增 {created} 条告警")
        return count
    except Exception as e:
        logger.error(f"清理执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='库存过期预占清理工具')
    parser.add_argument(
        '--batch-size', 
        type=int, 
        default=500,
        help='批处理大小 (默认: 500)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='试运行模式，只统计不执行清理'
    )
    parser.add_argument(
        '--scan-low-stock',
        action='store_true',
        help='清理后执行一次低库存巡检'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='详细输出模式'
    )
    
    args = parser.parse_args(argv)
    
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    
    try:
        result = run_cleanup(args.batch_size, args.dry_run, args.scan_low_stock)
        if args.dry_run:
            print(f"📊 试运行结果：发现 {result} 条过期记录")
        else:
            print(f"✅ 清理完成：处理了 {result} 条记录")
    except LockConflict as e:
        print(f"⏳ {e.message}")
        return 2
    except Exception as e:
        print(f"❌ 执行失败: {str(e)}")
        return 1
    
    return 0

if __name__ == "__main__":
    exit(main())
