"""Reader for GEO series-matrix files (``GSExxx[-GPLyyy]_series_matrix.txt[.gz]``).

A series with several platforms ships one file per platform; each file is
parsed into a :class:`SeriesMatrix` and the caller picks one explicitly with
:func:`select_platform`.
"""

import gzip
import io
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence, Union

import pandas as pd
import polars as pl

from geneflux.errors import InvalidDataError, NoSuchPlatformError
from geneflux.utils.utils import log_info, log_time

TABLE_BEGIN = "!series_matrix_table_begin"
TABLE_END = "!series_matrix_table_end"
NULL_VALUES = ["null", "NULL", "NA", "NaN", "N/A", ""]


@dataclass(frozen=True)
class SeriesMatrix:
    accession: str
    platform_id: str
    expression: pd.DataFrame            # features × samples
    samples: pd.DataFrame               # samples × attributes
    series: Dict[str, List[str]] = field(default_factory=dict)
    source: str = ""


def _open_text(path: Path):
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8", errors="replace")
    return open(path, "r", encoding="utf-8", errors="replace")


def _split_fields(line: str) -> List[str]:
    return [f.strip().strip('"') for f in line.rstrip("\n").split("\t")]


def _characteristic_columns(rows: List[List[str]]) -> Dict[str, List[str]]:
    """Turn repeated ``!Sample_characteristics_ch1`` rows of "key: value" into columns."""
    out: Dict[str, List[str]] = {}
    for i, values in enumerate(rows):
        for j, cell in enumerate(values):
            if ":" in cell:
                key, val = cell.split(":", 1)
                key = re.sub(r"\s+", "_", key.strip().lower()) or f"characteristics_{i}"
                val = val.strip()
            else:
                key, val = f"characteristics_{i}", cell.strip()
            col = out.setdefault(key, [None] * len(values))
            if col[j] is None:
                col[j] = val
    return out


def _parse_table(lines: List[str], source: str) -> pd.DataFrame:
    if not lines:
        raise InvalidDataError(f"{source}: empty expression table.")

    # all-string read, then an explicit numeric cast so bad cells can be reported
    df = pl.read_csv(
        io.StringIO("".join(lines)),
        separator="\t",
        infer_schema_length=0,
        null_values=NULL_VALUES,
        quote_char='"',
    )
    id_col = df.columns[0]
    sample_cols = df.columns[1:]

    casted = df.with_columns([pl.col(c).cast(pl.Float64, strict=False) for c in sample_cols])
    bad = [
        c for c in sample_cols
        if (casted[c].is_null() & df[c].is_not_null()).any()
    ]
    if bad:
        raise InvalidDataError(f"{source}: non-numeric expression values in samples {bad[:10]}")

    expr = casted.to_pandas().set_index(id_col)
    expr.index = expr.index.astype(str)
    expr.index.name = "FEATURE_ID"
    return expr


@log_time("Series matrix parsing")
def parse_series_matrix(path: Union[str, Path]) -> SeriesMatrix:
    """Parse one series-matrix file into expression + sample metadata."""
    path = Path(path)
    series: Dict[str, List[str]] = {}
    sample_rows: Dict[str, List[List[str]]] = {}
    table_lines: List[str] = []
    in_table = False

    with _open_text(path) as fh:
        for line in fh:
            if in_table:
                if line.startswith(TABLE_END):
                    in_table = False
                    continue
                table_lines.append(line)
            elif line.startswith(TABLE_BEGIN):
                in_table = True
            elif line.startswith("!Series_"):
                key, *values = _split_fields(line)
                series.setdefault(key[len("!Series_"):], []).extend(values)
            elif line.startswith("!Sample_"):
                key, *values = _split_fields(line)
                sample_rows.setdefault(key[len("!Sample_"):], []).append(values)

    expr = _parse_table(table_lines, str(path))

    columns: Dict[str, List[str]] = {}
    for key, rows in sample_rows.items():
        if key.startswith("characteristics"):
            columns.update(_characteristic_columns(rows))
        else:
            columns[key] = rows[0]
            for k, extra in enumerate(rows[1:], start=1):
                columns[f"{key}_{k}"] = extra

    if "geo_accession" in columns:
        samples = pd.DataFrame(columns, index=pd.Index(columns["geo_accession"], name="SAMPLE_ID"))
    else:
        samples = pd.DataFrame(columns, index=pd.Index(list(expr.columns), name="SAMPLE_ID"))

    accession = (series.get("geo_accession") or [path.name.split("_")[0]])[0]
    platforms = columns.get("platform_id") or series.get("platform_id") or [""]
    platform_id = platforms[0]

    log_info(f"{path.name}: {accession}/{platform_id}, {expr.shape[0]} features × {expr.shape[1]} samples")
    return SeriesMatrix(
        accession=accession,
        platform_id=platform_id,
        expression=expr,
        samples=samples,
        series=series,
        source=str(path),
    )


def load_series_matrices(paths: Sequence[Union[str, Path]]) -> List[SeriesMatrix]:
    """Parse every file; one entry per platform, in the given order."""
    return [parse_series_matrix(p) for p in paths]


def select_platform(platforms: Sequence, index: int):
    """Return ``platforms[index]``; out-of-range (or negative) raises NoSuchPlatformError."""
    n = len(platforms)
    if not isinstance(index, int) or isinstance(index, bool) or index < 0 or index >= n:
        labels = [getattr(p, "platform_id", str(i)) for i, p in enumerate(platforms)]
        raise NoSuchPlatformError(
            f"Platform index {index!r} out of range: {n} platform(s) available {labels}."
        )
    return platforms[index]
