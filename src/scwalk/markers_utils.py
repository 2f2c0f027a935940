from __future__ import annotations

import logging
from typing import Optional

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from scanpy.get import rank_genes_groups_df

LOGGER = logging.getLogger(__name__)

MARKER_COLUMNS = [
    "cluster",
    "gene",
    "scores",
    "logfoldchanges",
    "pvals",
    "pvals_adj",
    "pct_in",
    "pct_rest",
]


def _coerce_pts_columns(df: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize rank_genes_groups_df prevalence columns to pct_in / pct_rest.

    Handles both Scanpy namings:
      - pct_nz_group / pct_nz_reference
      - pts / pts_rest
    """
    out = df.copy()

    if "pct_nz_group" in out.columns and "pct_nz_reference" in out.columns:
        return out.rename(columns={"pct_nz_group": "pct_in", "pct_nz_reference": "pct_rest"})

    if "pts" in out.columns and "pts_rest" in out.columns:
        return out.rename(columns={"pts": "pct_in", "pts_rest": "pct_rest"})

    if "pct_in" not in out.columns:
        out["pct_in"] = np.nan
    if "pct_rest" not in out.columns:
        out["pct_rest"] = np.nan
    return out


def _apply_min_pct_filters(df: pd.DataFrame, *, min_pct: float = 0.0) -> pd.DataFrame:
    """Keep genes detected in at least ``min_pct`` of either the cluster or the rest."""
    if df.empty or min_pct <= 0.0:
        return df

    d = df.copy()
    d["pct_in"] = pd.to_numeric(d["pct_in"], errors="coerce")
    d["pct_rest"] = pd.to_numeric(d["pct_rest"], errors="coerce")

    # no prevalence information at all: do not drop everything silently
    if d["pct_in"].notna().sum() == 0 and d["pct_rest"].notna().sum() == 0:
        LOGGER.warning("Detection fractions missing; min_pct filter not applied.")
        return df

    keep = (d["pct_in"] >= min_pct) | (d["pct_rest"] >= min_pct)
    return d.loc[keep].copy()


def compute_cluster_markers(
    adata: ad.AnnData,
    groupby: str,
    *,
    method: str = "wilcoxon",
    min_pct: float = 0.25,
    logfc_threshold: float = 0.25,
    positive_only: bool = True,
    layer: Optional[str] = "lognorm",
    key_added: str = "rank_genes_groups",
) -> pd.DataFrame:
    """
    One-vs-rest marker genes per cluster.

    Genes must be detected in >= ``min_pct`` of cells in the cluster or in the
    rest, and have log2 fold change >= ``logfc_threshold`` (absolute value
    unless ``positive_only``). Each cluster's rows are sorted by adjusted
    p-value.
    """
    if groupby not in adata.obs:
        raise KeyError(f"groupby '{groupby}' not found in adata.obs")

    if layer is not None and layer not in adata.layers:
        LOGGER.warning("Layer '%s' not found; testing on adata.X.", layer)
        layer = None

    labels = adata.obs[groupby]
    if not isinstance(labels.dtype, pd.CategoricalDtype):
        adata.obs[groupby] = labels.astype(str).astype("category")

    sizes = adata.obs[groupby].value_counts()
    if (sizes < 2).any():
        raise ValueError(
            f"Clusters with fewer than 2 cells cannot be tested: {sizes[sizes < 2].index.tolist()}"
        )

    LOGGER.info(
        "Ranking marker genes for %d clusters of '%s' (%s)",
        len(sizes),
        groupby,
        method,
    )
    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        method=method,
        layer=layer,
        use_raw=False,
        pts=True,
        key_added=key_added,
    )

    tables = []
    for group in adata.obs[groupby].cat.categories:
        df = rank_genes_groups_df(adata, group=str(group), key=key_added)
        df = _coerce_pts_columns(df)
        df = df.rename(columns={"names": "gene"})

        # logreg reports coefficients only
        for col in ("logfoldchanges", "pvals", "pvals_adj"):
            if col not in df.columns:
                df[col] = np.nan

        df = _apply_min_pct_filters(df, min_pct=min_pct)

        lfc = pd.to_numeric(df["logfoldchanges"], errors="coerce")
        if lfc.notna().any():
            if positive_only:
                df = df.loc[lfc >= logfc_threshold]
            else:
                df = df.loc[lfc.abs() >= logfc_threshold]

        df = df.sort_values(["pvals_adj", "scores"], ascending=[True, False], kind="stable")
        df.insert(0, "cluster", str(group))
        tables.append(df)

    markers = pd.concat(tables, ignore_index=True) if tables else pd.DataFrame(columns=MARKER_COLUMNS)
    markers = markers[MARKER_COLUMNS].copy()
    markers["gene"] = markers["gene"].astype(str)

    LOGGER.info(
        "Markers passing filters (min_pct=%.2f, logFC>=%.2f%s): %s",
        min_pct,
        logfc_threshold,
        ", positive only" if positive_only else "",
        markers.groupby("cluster", sort=False).size().to_dict(),
    )
    return markers
