# Shared pytest fixtures
from __future__ import annotations

import io
import tempfile
from collections.abc import Callable
from pathlib import Path

import pandas as pd
import pytest

from cir_import.db.memory_store import MemoryStore
from cir_import.logging.init import reset_logging


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def sample_config_yaml() -> str:
    return """max_file_size_mb: 5
max_errors: 50
prune_removed: true
page_size: 2
timeouts:
  snapshot_seconds: 10
  commit_seconds: 10
datasets:
  cir_segment:
    extra_aliases:
      cat_fab_l: [LIBELLE CATEGORIE]
templates:
  as400:
    dataset: cir_segment
    mapping:
      segment: SEG_CODE
      marque: FOURNISSEUR
      cat_fab: CATEGORIE_FAB
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


def build_workbook(sheets: dict[str, list[list]]) -> bytes:
    """xlsx bytes; each sheet is written as raw rows (first row = headers)."""
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        for name, rows in sheets.items():
            pd.DataFrame(rows).to_excel(writer, sheet_name=name, header=False, index=False)
    return buf.getvalue()


@pytest.fixture()
def make_workbook() -> Callable[[dict[str, list[list]]], bytes]:
    return build_workbook


@pytest.fixture()
def make_xlsx() -> Callable[..., bytes]:
    def _make(rows: list[list], sheet_name: str = "Sheet1") -> bytes:
        return build_workbook({sheet_name: rows})
    return _make


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore(page_size=2)


@pytest.fixture()
def segment_records() -> list[dict]:
    """Existing segment dataset used by reconciliation and classification tests."""
    return [
        {
            "segment": "A1", "marque": "SKF", "cat_fab": "Z16", "cat_fab_l": "Roulements",
            "strategiq": 0, "codif_fair": None, "fsmega": 12, "fsfam": 3, "fssfa": 4,
            "classif_cir": "12 3 4",
        },
        {
            "segment": "A2", "marque": "SKF", "cat_fab": "Z17", "cat_fab_l": None,
            "strategiq": 1, "codif_fair": "F17", "fsmega": 12, "fsfam": 5, "fssfa": 6,
            "classif_cir": "12 5 6",
        },
        {
            "segment": "B1", "marque": "NTN", "cat_fab": "K1", "cat_fab_l": None,
            "strategiq": 0, "codif_fair": None, "fsmega": 7, "fsfam": 1, "fssfa": 1,
            "classif_cir": "7 1 1",
        },
    ]


@pytest.fixture()
def seeded_store(store: MemoryStore, segment_records: list[dict]) -> MemoryStore:
    store.seed("cir_segment", segment_records)
    return store
