from __future__ import annotations

from pathlib import Path

import pytest

import cir_import.cli.__main__ as cli
from cir_import.cli.__main__ import main as cli_main
from cir_import.config.loader import ImportSettings
from cir_import.db.memory_store import MemoryStore
from cir_import.db.postgres_store import PostgresStore
from cir_import.models.import_batch import BatchStatus, ImportBatch


def _args(*argv: str):
    return cli._parse_args(list(argv))


def test_parse_args_apply():
    args = _args("--mock", "apply", "in.xlsx", "--dataset", "cir_segment", "--max-errors", "5", "--yes")
    assert args.mock is True
    assert args.command == "apply"
    assert args.file == Path("in.xlsx")
    assert args.max_errors == 5
    assert args.yes is True
    assert args.sheet is None and args.template is None


def test_parse_args_rejects_unknown_dataset():
    with pytest.raises(SystemExit):
        _args("analyze", "in.xlsx", "--dataset", "prices")


def test_parse_args_requires_command():
    with pytest.raises(SystemExit):
        _args()


def test_load_settings_falls_back_to_defaults(temp_workdir: Path):
    assert cli._load_settings(None) == ImportSettings()


def test_make_store_uses_dotenv_dsn(temp_workdir: Path, write_config: Path, monkeypatch):
    # Registered so the value loaded from .env is removed after the test
    monkeypatch.setenv("DATABASE_URL", "postgresql://placeholder")
    monkeypatch.delenv("PGDSN", raising=False)
    (temp_workdir / ".env").write_text("DATABASE_URL=postgresql://env@db/cir\n", encoding="utf-8")
    cli._load_env_file(Path(".env"))
    settings = cli._load_settings(None)
    store = cli._make_store(_args("status"), settings)
    assert isinstance(store, PostgresStore)
    assert store.dsn == "postgresql://env@db/cir"
    assert store.statement_timeout_ms == 10000
    assert store.page_size == 2


def test_make_store_mock(write_config: Path):
    store = cli._make_store(_args("--mock", "status"), ImportSettings(page_size=7))
    assert isinstance(store, MemoryStore)
    assert store.page_size == 7


def test_status_lists_recent_batches(write_config: Path, monkeypatch, capsys):
    store = MemoryStore()
    for i, status in enumerate((BatchStatus.COMPLETED, BatchStatus.FAILED)):
        store.create_batch(ImportBatch(id=f"b{i}", filename=f"f{i}.xlsx", dataset_type="cir_segment", status=status))
    store.create_batch(ImportBatch(id="c0", filename="cir.xlsx", dataset_type="cir_classification"))
    monkeypatch.setattr(cli, "_make_store", lambda args, settings: store)

    assert cli_main(["status", "--dataset", "cir_segment"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 2
    assert all("cir_segment" in line for line in lines)

    assert cli_main(["status", "--limit", "1"]) == 0
    assert len(capsys.readouterr().out.splitlines()) == 1


def test_status_shows_batch_error(write_config: Path, monkeypatch, capsys):
    store = MemoryStore()
    store.create_batch(ImportBatch(
        id="b1", filename="f.xlsx", dataset_type="cir_segment", status=BatchStatus.FAILED, error="disk full",
    ))
    monkeypatch.setattr(cli, "_make_store", lambda args, settings: store)
    assert cli_main(["status", "b1"]) == 0
    out = capsys.readouterr().out
    assert "b1 " in out and "failed" in out
    assert "  error: disk full" in out


@pytest.mark.parametrize("value", ["0", "-3", "many"])
def test_parse_args_rejects_invalid_max_errors(value):
    with pytest.raises(SystemExit):
        _args("analyze", "in.xlsx", "--dataset", "cir_segment", "--max-errors", value)


def test_oversized_file_rejected_before_reading(write_config: Path, temp_workdir: Path, monkeypatch, capsys):
    path = temp_workdir / "data" / "huge.xlsx"
    with open(path, "wb") as f:
        f.truncate(6 * 1024 * 1024)

    def fail_read(self):
        raise AssertionError(f"{self} should not be read")

    monkeypatch.setattr(Path, "read_bytes", fail_read)
    assert cli_main(["--mock", "analyze", str(path), "--dataset", "cir_segment"]) == 1
    assert "file too large" in capsys.readouterr().out
