from __future__ import annotations

from unittest.mock import Mock, patch

from cir_import.services.progress import ProgressTracker, is_tty_enabled


class TestIsTtyEnabled:
    def test_is_tty_enabled_true(self):
        with patch("sys.stdout.isatty", return_value=True):
            assert is_tty_enabled() is True

    def test_is_tty_enabled_false(self):
        with patch("sys.stdout.isatty", return_value=False):
            assert is_tty_enabled() is False


class TestProgressTracker:
    """ProgressTracker creates a tqdm bar on TTY only."""

    def test_init_with_tty_enabled(self):
        mock_pbar = Mock()
        with patch("cir_import.services.progress.is_tty_enabled", return_value=True), \
             patch("cir_import.services.progress.tqdm", return_value=mock_pbar) as mock_tqdm:
            tracker = ProgressTracker(120, description="Reading cir_segment")

            assert tracker.enabled is True
            assert tracker.pbar is mock_pbar
            mock_tqdm.assert_called_once_with(
                total=120,
                desc="Reading cir_segment",
                unit="row",
                leave=False,
                ncols=80,
                ascii=True,
            )

    def test_init_with_tty_disabled(self):
        with patch("cir_import.services.progress.is_tty_enabled", return_value=False), \
             patch("cir_import.services.progress.tqdm") as mock_tqdm:
            tracker = ProgressTracker(10)

            assert tracker.enabled is False
            assert tracker.pbar is None
            mock_tqdm.assert_not_called()

    def test_advance_updates_bar_and_counter(self):
        mock_pbar = Mock()
        with patch("cir_import.services.progress.is_tty_enabled", return_value=True), \
             patch("cir_import.services.progress.tqdm", return_value=mock_pbar):
            tracker = ProgressTracker(10)
            tracker.advance(4)
            tracker.advance(6)

            assert tracker.done == 10
            assert mock_pbar.update.call_count == 2
            mock_pbar.update.assert_called_with(6)

    def test_advance_without_tty_only_counts(self):
        with patch("cir_import.services.progress.is_tty_enabled", return_value=False):
            tracker = ProgressTracker(None)
            tracker.advance(3)
            tracker.set_postfix(page=1)
            tracker.close()
            assert tracker.done == 3

    def test_set_postfix(self):
        mock_pbar = Mock()
        with patch("cir_import.services.progress.is_tty_enabled", return_value=True), \
             patch("cir_import.services.progress.tqdm", return_value=mock_pbar):
            tracker = ProgressTracker(10)
            tracker.set_postfix(chunk="2/3")
            mock_pbar.set_postfix.assert_called_once_with(chunk="2/3")

    def test_context_manager_closes_once(self):
        mock_pbar = Mock()
        with patch("cir_import.services.progress.is_tty_enabled", return_value=True), \
             patch("cir_import.services.progress.tqdm", return_value=mock_pbar):
            with ProgressTracker(3) as tracker:
                assert isinstance(tracker, ProgressTracker)
            tracker.close()

            mock_pbar.close.assert_called_once()
            assert tracker.pbar is None
