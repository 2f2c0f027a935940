from __future__ import annotations

import logging
from typing import Optional

import anndata as ad
import numpy as np
from scipy import sparse

from .config import LoadAndQCConfig
from . import io_utils
from . import plot_utils

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# QC metrics
# ---------------------------------------------------------------------
def compute_qc_metrics(adata: ad.AnnData, cfg: LoadAndQCConfig) -> ad.AnnData:
    X = adata.X
    if sparse.issparse(X):
        X = X.tocsr()
    else:
        LOGGER.warning("X is dense; QC may be slow and memory intensive.")
        X = sparse.csr_matrix(X)

    n_cells, n_genes = X.shape

    # Gene categories
    mt_prefix = getattr(cfg, "mt_prefix", "MT-")
    ribo_prefixes = getattr(cfg, "ribo_prefixes", ["RPL", "RPS"])
    hb_regex = getattr(cfg, "hb_regex", r"^HB[AB]")

    adata.var["mt"] = adata.var_names.str.startswith(mt_prefix)
    adata.var["ribo"] = adata.var_names.str.startswith(tuple(ribo_prefixes))
    adata.var["hb"] = adata.var_names.str.contains(hb_regex, regex=True)

    if not adata.var["mt"].any():
        LOGGER.warning(
            "No genes start with '%s'; pct_counts_mt will be 0 for every cell.", mt_prefix
        )

    mt_idx = np.where(adata.var["mt"].values)[0]
    ribo_idx = np.where(adata.var["ribo"].values)[0]
    hb_idx = np.where(adata.var["hb"].values)[0]

    LOGGER.info("Computing sparse per-cell QC metrics...")

    total_counts = np.asarray(X.sum(axis=1)).ravel()
    X_nz = X.copy()
    X_nz.eliminate_zeros()
    n_genes_by_counts = np.diff(X_nz.indptr)

    def pct_from_idx(idx):
        if len(idx) == 0:
            return np.zeros(n_cells)
        vals = np.asarray(X[:, idx].sum(axis=1)).ravel()
        return vals / np.maximum(total_counts, 1)

    adata.obs["total_counts"] = total_counts
    adata.obs["n_genes_by_counts"] = n_genes_by_counts
    adata.obs["pct_counts_mt"] = pct_from_idx(mt_idx) * 100
    adata.obs["pct_counts_ribo"] = pct_from_idx(ribo_idx) * 100
    adata.obs["pct_counts_hb"] = pct_from_idx(hb_idx) * 100

    LOGGER.info("Computing sparse per-gene QC metrics...")

    n_cells_by_counts = np.bincount(X_nz.indices, minlength=n_genes)
    total_counts_gene = np.asarray(X.sum(axis=0)).ravel()

    adata.var["n_cells_by_counts"] = n_cells_by_counts
    adata.var["mean_counts"] = total_counts_gene / max(n_cells, 1)
    adata.var["total_counts"] = total_counts_gene
    adata.var["pct_dropout_by_counts"] = 100 * (1 - n_cells_by_counts / max(n_cells, 1))

    return adata


# ---------------------------------------------------------------------
# Sparse filtering
# ---------------------------------------------------------------------
def sparse_filter_cells_and_genes(
    adata: ad.AnnData,
    *,
    min_genes: int,
    min_cells: int,
    max_pct_mt: Optional[float] = None,
    max_genes: Optional[int] = None,
) -> ad.AnnData:
    """
    Cell filters first (min_genes, max_genes, max_pct_mt), then genes detected
    in fewer than ``min_cells`` of the surviving cells are dropped.
    """
    if not sparse.isspmatrix_csr(adata.X):
        adata.X = sparse.csr_matrix(adata.X)

    def _nnz_per_cell(X):
        X = X.copy()
        X.eliminate_zeros()
        return np.diff(X.indptr)

    # --------------------------------------------------
    # Cell filtering: min_genes / max_genes
    # --------------------------------------------------
    gene_counts = _nnz_per_cell(adata.X)
    cell_mask = gene_counts >= min_genes
    if cell_mask.sum() == 0:
        raise ValueError(f"All cells removed by min_genes={min_genes}.")

    if max_genes is not None:
        cell_mask &= gene_counts <= max_genes
        if cell_mask.sum() == 0:
            raise ValueError(f"All cells removed by max_genes={max_genes}.")

    LOGGER.info("Gene-count filter kept %d / %d cells", int(cell_mask.sum()), adata.n_obs)
    adata = adata[cell_mask].copy()

    # --------------------------------------------------
    # Cell filtering: max_pct_mt
    # --------------------------------------------------
    if max_pct_mt is not None:
        if "pct_counts_mt" not in adata.obs:
            raise KeyError(
                "pct_counts_mt not found in adata.obs. "
                "Run compute_qc_metrics() before sparse filtering."
            )

        mt_mask = adata.obs["pct_counts_mt"].to_numpy() <= max_pct_mt
        if mt_mask.sum() == 0:
            raise ValueError(f"All cells removed by max_pct_mt={max_pct_mt}.")

        LOGGER.info("Mito filter (<= %.1f%%) kept %d / %d cells", max_pct_mt, int(mt_mask.sum()), adata.n_obs)
        adata = adata[mt_mask].copy()

    # --------------------------------------------------
    # Gene filtering: min_cells
    # --------------------------------------------------
    X = adata.X.copy()
    X.eliminate_zeros()
    gene_nnz = np.bincount(X.indices, minlength=adata.n_vars)
    gene_mask = gene_nnz >= min_cells
    if gene_mask.sum() == 0:
        raise ValueError(f"All genes removed by min_cells={min_cells}.")
    adata = adata[:, gene_mask].copy()

    return adata


# ---------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------
def run_load_and_qc(cfg: LoadAndQCConfig) -> ad.AnnData:
    LOGGER.info("Starting load_and_qc")

    if cfg.make_figures:
        plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)

    adata = io_utils.read_10x_matrix(cfg.matrix_dir, var_names=cfg.var_names)

    if cfg.sample_id is not None:
        adata.obs["sample_id"] = cfg.sample_id
        adata.obs["sample_id"] = adata.obs["sample_id"].astype("category")

    if cfg.metadata_tsv is not None:
        adata = io_utils.add_metadata(adata, cfg.metadata_tsv, key=cfg.batch_key)

    adata = compute_qc_metrics(adata, cfg)
    n_cells_raw, n_genes_raw = adata.n_obs, adata.n_vars

    groupby = cfg.batch_key if cfg.batch_key in adata.obs and adata.obs[cfg.batch_key].nunique() > 1 else None

    if cfg.make_figures:
        plot_utils.run_qc_plots(adata, "prefilter", groupby=groupby, max_pct_mt=cfg.max_pct_mt)

    adata = sparse_filter_cells_and_genes(
        adata,
        min_genes=cfg.min_genes,
        min_cells=cfg.min_cells,
        max_pct_mt=cfg.max_pct_mt,
        max_genes=cfg.max_genes,
    )
    adata.layers["counts"] = adata.X.copy()

    # per-gene metrics refer to the retained cells
    adata = compute_qc_metrics(adata, cfg)

    if cfg.make_figures:
        plot_utils.run_qc_plots(adata, "postfilter", groupby=groupby, max_pct_mt=cfg.max_pct_mt)

    adata.uns["qc"] = {
        "min_genes": int(cfg.min_genes),
        "max_genes": -1 if cfg.max_genes is None else int(cfg.max_genes),
        "min_cells": int(cfg.min_cells),
        "max_pct_mt": float(cfg.max_pct_mt),
        "mt_prefix": cfg.mt_prefix,
        "n_cells_before": int(n_cells_raw),
        "n_cells_after": int(adata.n_obs),
        "n_genes_before": int(n_genes_raw),
        "n_genes_after": int(adata.n_vars),
    }

    LOGGER.info(
        "QC kept %d / %d cells (%.1f%%) and %d / %d genes",
        adata.n_obs,
        n_cells_raw,
        100 * adata.n_obs / max(n_cells_raw, 1),
        adata.n_vars,
        n_genes_raw,
    )

    out_path = io_utils.checkpoint_path(cfg.output_dir, cfg.output_name, cfg.checkpoint_format)
    io_utils.save_dataset(adata, out_path, fmt=cfg.checkpoint_format)

    LOGGER.info("Finished load_and_qc")
    return adata
