"""Saga：跨商品操作的补偿协调

每完成一个步骤就登记它的补偿动作；任何失败（包括超时和中断）都会在异常
向上传播之前按相反顺序执行已登记的补偿，因此回滚的总是已完成步骤的严格
前缀。补偿动作失败属于数据一致性事故，以 CRITICAL 级别记录足够的上下文
供人工对账，其余补偿继续执行。
"""

import logging
import time
from typing import Callable, List, Optional, Tuple

from app.core.exceptions import CheckoutTimeout

logger = logging.getLogger(__name__)


class Compensation:
    def __init__(self, action: Callable[[], bool], description: str, context: dict):
        self.action = action
        self.description = description
        self.context = context


class Saga:
    def __init__(self, reference: str, timeout: Optional[float] = None):
        self.reference = reference
        self.timeout = timeout
        self.started_at = time.monotonic()
        self._compensations: List[Compensation] = []
        self.failed_compensations: List[Tuple[Compensation, Optional[BaseException]]] = []
        self.completed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None and not self.completed:
            logger.warning(
                f"Saga 中止，开始补偿: reference={self.reference}, "
                f"steps={len(self._compensations)}, cause={exc_type.__name__}: {exc}"
            )
            self.compensate()
        return False

    @property
    def pending_compensations(self) -> int:
        return len(self._compensations)

    def check_deadline(self):
        """超过截止时间则中止（由 __exit__ 负责补偿）"""
        if self.timeout is None:
            return
        elapsed = time.monotonic() - self.started_at
        if elapsed > self.timeout:
            raise CheckoutTimeout(
                "下单处理超时，请稍后重试",
                details={"reference": self.reference, "elapsed": round(elapsed, 3)},
            )

    def add_compensation(self, action: Callable[[], bool], description: str, **context):
        self._compensations.append(Compensation(action, description, context))

    def complete(self):
        """所有步骤成功，丢弃补偿"""
        self.completed = True
        self._compensations.clear()

    def compensate(self) -> int:
        """逆序执行补偿，返回失败数量"""
        while self._compensations:
            compensation = self._compensations.pop()
            try:
                ok = compensation.action()
            except Exception as e:
                self._report_failure(compensation, e)
                continue
            if not ok:
                self._report_failure(compensation, None)
            else:
                logger.info(
                    f"补偿完成: reference={self.reference}, {compensation.description}, "
                    f"context={compensation.context}"
                )
        return len(self.failed_compensations)

    def _report_failure(self, compensation: Compensation, error: Optional[BaseException]):
        self.failed_compensations.append((compensation, error))
        logger.critical(
            f"补偿失败，需要人工对账: reference={self.reference}, {compensation.description}, "
            f"context={compensation.context}, error={error!r}"
        )
