"""Saga 补偿协调单元测试"""
import logging

import pytest
from unittest.mock import patch

from app.core.exceptions import CheckoutTimeout, InsufficientStock
from app.services.saga import Saga


class TestSaga:
    """Saga 测试类"""

    def test_compensate_in_reverse_order(self):
        """测试失败时按相反顺序执行补偿"""
        calls = []

        with pytest.raises(RuntimeError):
            with Saga("SC-1") as saga:
                for name in ("A", "B", "C"):
                    saga.add_compensation(lambda n=name: calls.append(n) or True, f"undo {name}")
                raise RuntimeError("step failed")

        assert calls == ["C", "B", "A"]
        assert saga.pending_compensations == 0
        assert saga.failed_compensations == []

    def test_complete_discards_compensations(self):
        """测试成功完成后不执行补偿"""
        calls = []

        with Saga("SC-2") as saga:
            saga.add_compensation(lambda: calls.append("A") or True, "undo A")
            saga.complete()

        assert calls == []
        assert saga.completed is True

    def test_failed_compensation_logged_and_others_continue(self, caplog):
        """测试补偿失败记录 CRITICAL，其余补偿继续执行"""
        calls = []

        def broken():
            raise ValueError("db down")

        with caplog.at_level(logging.CRITICAL, logger="app.services.saga"):
            with pytest.raises(RuntimeError):
                with Saga("SC-3") as saga:
                    saga.add_compensation(lambda: calls.append("A") or True, "undo A", product_id=1)
                    saga.add_compensation(broken, "undo B", product_id=2)
                    saga.add_compensation(lambda: False, "undo C", product_id=3)
                    raise RuntimeError("step failed")

        assert calls == ["A"]
        assert len(saga.failed_compensations) == 2
        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 2
        assert "SC-3" in critical[0].getMessage()

    def test_base_exception_triggers_compensation(self):
        """测试中断类异常（KeyboardInterrupt）同样触发补偿"""
        calls = []

        with pytest.raises(KeyboardInterrupt):
            with Saga("SC-4") as saga:
                saga.add_compensation(lambda: calls.append("A") or True, "undo A")
                raise KeyboardInterrupt()

        assert calls == ["A"]

    def test_original_exception_propagates(self):
        """测试补偿后抛出的是原始异常"""
        with pytest.raises(InsufficientStock) as exc_info:
            with Saga("SC-5") as saga:
                saga.add_compensation(lambda: True, "undo A")
                raise InsufficientStock(1, "T恤", 2, 5)

        assert exc_info.value.available == 2
        assert exc_info.value.requested == 5

    def test_check_deadline(self):
        """测试超过截止时间抛出 CheckoutTimeout"""
        with patch("app.services.saga.time.monotonic", side_effect=[100.0, 100.5, 131.0]):
            saga = Saga("SC-6", timeout=30)
            saga.check_deadline()
            with pytest.raises(CheckoutTimeout):
                saga.check_deadline()

    def test_no_deadline_without_timeout(self):
        saga = Saga("SC-7")
        saga.check_deadline()
