"""本地清理脚本单元测试"""
import pytest
from unittest.mock import Mock, patch

from app.core.exceptions import LockConflict
from app.jobs import manual_cleanup


class TestManualCleanup:
    """清理脚本测试类"""

    def test_main_success(self, capsys):
        with patch.object(manual_cleanup, "run_cleanup", return_value=3) as mock_run:
            code = manual_cleanup.main(["--batch-size", "50", "--scan-low-stock"])

        assert code == 0
        mock_run.assert_called_once_with(50, False, True)
        assert "处理了 3 条记录" in capsys.readouterr().out

    def test_main_dry_run(self, capsys):
        with patch.object(manual_cleanup, "run_cleanup", return_value=7) as mock_run:
            code = manual_cleanup.main(["--dry-run"])

        assert code == 0
        mock_run.assert_called_once_with(500, True, False)
        assert "发现 7 条过期记录" in capsys.readouterr().out

    def test_main_lock_conflict(self):
        """测试已有清理任务在执行时返回 2"""
        error = LockConflict("已有清理任务在执行，请稍后重试")
        with patch.object(manual_cleanup, "run_cleanup", side_effect=error):
            assert manual_cleanup.main([]) == 2

    def test_main_failure(self):
        with patch.object(manual_cleanup, "run_cleanup", side_effect=RuntimeError("db down")):
            assert manual_cleanup.main([]) == 1

    def test_run_cleanup_closes_session(self):
        """测试清理结束后关闭会话"""
        db = Mock()
        with patch.object(manual_cleanup, "SessionLocal", return_value=db), \
             patch.object(manual_cleanup, "InventoryService") as mock_service:
            mock_service.return_value.cleanup_expired_reservations.return_value = 4

            assert manual_cleanup.run_cleanup(batch_size=10) == 4

        mock_service.return_value.cleanup_expired_reservations.assert_called_once_with(10)
        db.close.assert_called_once()

    def test_run_cleanup_rolls_back_on_error(self):
        db = Mock()
        with patch.object(manual_cleanup, "SessionLocal", return_value=db), \
             patch.object(manual_cleanup, "InventoryService") as mock_service:
            mock_service.return_value.cleanup_expired_reservations.side_effect = RuntimeError("boom")

            with pytest.raises(RuntimeError):
                manual_cleanup.run_cleanup()

        db.rollback.assert_called_once()
        db.close.assert_called_once()
