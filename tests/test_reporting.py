from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from racetimer.persistence import NodeRecord
from racetimer.reporting import COLUMNS, export_nodes, nodes_frame


def test_nodes_frame_orders_and_computes_gaps() -> None:
    nodes = [
        NodeRecord(id=3, peak=62, time=4_000_000_000, duration=1.0, race_id=1),
        NodeRecord(id=1, peak=55, time=1_500_000_000, duration=0.5, race_id=1),
        NodeRecord(id=2, peak=70, time=2_000_000_000, duration=0.2, race_id=2),
    ]
    df = nodes_frame(nodes)
    assert list(df.columns) == COLUMNS
    assert list(df["id"]) == [1, 3, 2]
    assert df.loc[0, "elapsed_s"] == pytest.approx(1.5)
    assert pd.isna(df.loc[0, "gap_s"])
    assert df.loc[1, "gap_s"] == pytest.approx(2.5)
    assert pd.isna(df.loc[2, "gap_s"])


def test_export_nodes_writes_csv(tmp_path: Path) -> None:
    out = tmp_path / "reports" / "nodes.csv"
    export_nodes([NodeRecord(id=1, peak=55, time=10, duration=0.1, race_id=1)], out)
    df = pd.read_csv(out)
    assert list(df.columns) == COLUMNS
    assert df.loc[0, "time_ns"] == 10


def test_empty_export_has_header(tmp_path: Path) -> None:
    out = tmp_path / "nodes.csv"
    df = export_nodes([], out)
    assert df.empty
    assert out.read_text(encoding="utf-8").strip() == ",".join(COLUMNS)
