"""CSV export of stored gate crossings."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable

import pandas as pd

from .persistence import NodeRecord

COLUMNS = ["id", "race_id", "peak", "time_ns", "elapsed_s", "duration_s", "gap_s"]


def nodes_frame(nodes: Iterable[NodeRecord]) -> pd.DataFrame:
    """Tabulate *nodes* ordered by race and time since race start.

    ``gap_s`` is the time since the previous crossing in the same race
    (NaN for the first one).
    """

    rows = [
        {
            "id": node.id,
            "race_id": node.race_id,
            "peak": node.peak,
            "time_ns": node.time,
            "duration_s": node.duration,
        }
        for node in nodes
    ]
    if not rows:
        return pd.DataFrame(columns=COLUMNS)
    df = pd.DataFrame(rows)
    df = df.sort_values(["race_id", "time_ns", "id"], kind="mergesort").reset_index(drop=True)
    df["elapsed_s"] = df["time_ns"] / 1e9
    df["gap_s"] = df.groupby("race_id")["elapsed_s"].diff()
    return df[COLUMNS]


def export_nodes(nodes: Iterable[NodeRecord], out_path: Path) -> pd.DataFrame:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df = nodes_frame(nodes)
    df.to_csv(out_path, index=False)
    return df
