from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Dict, List, Literal

import anndata as ad
import pandas as pd
import scanpy as sc


LOGGER = logging.getLogger(__name__)


# =====================================================================
# 10x matrix loading
# =====================================================================
def read_10x_matrix(
    matrix_dir: Path,
    var_names: Literal["gene_symbols", "gene_ids"] = "gene_symbols",
) -> ad.AnnData:
    """
    Read a Cell Ranger style matrix directory (matrix.mtx, features/genes.tsv,
    barcodes.tsv; gzipped or not) into a cells x genes AnnData.

    The barcode suffix added by library aggregation (``AAACCTG...-2``) is
    kept as ``obs['library_id']`` so it can serve as a batch covariate.
    """
    matrix_dir = Path(matrix_dir)
    if not matrix_dir.is_dir():
        raise FileNotFoundError(f"Matrix directory not found: {matrix_dir}")

    adata = sc.read_10x_mtx(str(matrix_dir), var_names=var_names, cache=False)
    adata.var_names_make_unique()

    barcodes = adata.obs_names.to_series()
    suffix = barcodes.str.extract(r"-(\d+)$", expand=False).fillna("1")
    adata.obs["library_id"] = pd.Categorical(suffix.to_numpy())

    LOGGER.info(
        "[I/O] Loaded %s: %d cells × %d genes, %.2e UMIs",
        matrix_dir.name,
        adata.n_obs,
        adata.n_vars,
        float(adata.X.sum()),
    )
    return adata


def add_metadata(adata: ad.AnnData, metadata_tsv: Path, key: str) -> ad.AnnData:
    """
    Attach per-library metadata from a TSV to adata.obs, joined on ``key``.

    Low-cardinality string columns are cast to 'category'. The join column
    itself is never overwritten.
    """
    metadata_tsv = Path(metadata_tsv)
    if not metadata_tsv.exists():
        raise FileNotFoundError(f"Metadata TSV not found: {metadata_tsv}")

    if key not in adata.obs:
        raise KeyError(
            f"Column '{key}' not found in adata.obs. "
            f"Available columns: {list(adata.obs.columns)}"
        )

    df = pd.read_csv(metadata_tsv, sep="\t")
    if key not in df.columns:
        raise KeyError(
            f"Metadata TSV does not contain required column '{key}'. "
            f"Found columns: {list(df.columns)}"
        )

    df[key] = df[key].astype(str)

    obs_ids = pd.Index(adata.obs[key].astype(str))
    missing = obs_ids.unique().difference(pd.Index(df[key]))
    if len(missing) > 0:
        raise ValueError(
            f"Some '{key}' values in adata.obs are missing in metadata_tsv:\n"
            f"  {list(missing)}"
        )

    temp = pd.DataFrame({key: adata.obs[key].astype(str)}, index=adata.obs_names)
    merged = temp.merge(df, on=key, how="left")

    for col in df.columns:
        if col == key:
            continue
        adata.obs[col] = merged[col].values
        if (
            adata.obs[col].dtype == object
            and adata.obs[col].nunique() < 0.1 * len(adata.obs)
        ):
            adata.obs[col] = adata.obs[col].astype("category")

    return adata


# =====================================================================
# Checkpoints
# =====================================================================
def checkpoint_path(output_dir: Path, output_name: str, fmt: str) -> Path:
    return Path(output_dir) / f"{output_name}.{fmt}"


def save_dataset(adata: ad.AnnData, out_path: Path, fmt: Literal["h5ad", "zarr"] = "h5ad") -> Path:
    """
    Write an analysis snapshot. Existing Zarr stores at ``out_path`` are
    replaced rather than merged.
    """
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    if fmt == "h5ad":
        adata.write_h5ad(str(out_path), compression="gzip")
    elif fmt == "zarr":
        if out_path.exists():
            shutil.rmtree(out_path)
        adata.write_zarr(str(out_path))
    else:
        raise ValueError(f"Unknown dataset format: {fmt}")

    LOGGER.info("Wrote %s (%d cells × %d genes)", out_path, adata.n_obs, adata.n_vars)
    return out_path


def load_dataset(path: Path) -> ad.AnnData:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")

    if path.suffix == ".h5ad":
        adata = ad.read_h5ad(str(path))
    elif path.suffix == ".zarr":
        adata = ad.read_zarr(str(path))
    else:
        raise ValueError(f"Unrecognized dataset suffix '{path.suffix}' (expected .h5ad or .zarr)")

    LOGGER.info("Loaded %s: %d cells × %d genes", path, adata.n_obs, adata.n_vars)
    return adata


# =====================================================================
# Tables
# =====================================================================
def _safe_token(x: object) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in str(x))


def export_marker_tables(
    markers: pd.DataFrame,
    out_dir: Path,
    *,
    group_col: str = "cluster",
    prefix: str = "markers",
) -> List[Path]:
    """
    Write the combined marker table plus one CSV per cluster.
    Returns the written paths (combined table first).
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    written = []
    combined = out_dir / f"{prefix}_all_clusters.csv"
    markers.to_csv(combined, index=False)
    written.append(combined)

    for group, df in markers.groupby(group_col, observed=True, sort=False):
        p = out_dir / f"{prefix}_cluster_{_safe_token(group)}.csv"
        df.to_csv(p, index=False)
        written.append(p)

    LOGGER.info("Exported %d marker rows for %d clusters → %s", len(markers), len(written) - 1, out_dir)
    return written


def export_cluster_annotations(adata: ad.AnnData, columns: List[str], out_path: Path) -> None:
    df = adata.obs[columns].copy()
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, index=True, index_label="barcode")
    LOGGER.info("Exported cluster annotations → %s", out_path)


def read_cluster_labels(path: Path) -> Dict[str, str]:
    """
    Read a cluster → label table. Accepts CSV or TSV with columns
    ``cluster`` and ``label`` (a header is required).
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Annotation table not found: {path}")

    sep = "\t" if path.suffix in {".tsv", ".txt"} else ","
    df = pd.read_csv(path, sep=sep, dtype=str)

    required = {"cluster", "label"}
    missing = required.difference(df.columns)
    if missing:
        raise KeyError(
            f"Annotation table must contain columns {sorted(required)}; missing {sorted(missing)}"
        )

    df = df.dropna(subset=["cluster", "label"])
    dup = df["cluster"][df["cluster"].duplicated()].unique()
    if len(dup) > 0:
        raise ValueError(f"Annotation table lists clusters more than once: {list(dup)}")

    return dict(zip(df["cluster"].str.strip(), df["label"].str.strip()))
