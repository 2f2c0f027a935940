from __future__ import annotations

import logging
from pathlib import Path

import anndata as ad
import pandas as pd

from .config import DoubletConfig
from . import doublet_utils
from . import io_utils
from . import plot_utils
from . import processing_utils

LOGGER = logging.getLogger(__name__)


def run_find_doublets(cfg: DoubletConfig) -> ad.AnnData:
    """
    Embed and cluster the post-QC object, call doublets with the pN/pK
    artificial-neighbor method and write the singlet-only checkpoint.
    """
    LOGGER.info("Starting find-doublets")

    if cfg.make_figures:
        plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)

    adata = io_utils.load_dataset(cfg.input_path)

    # ---------------------------------------------------------
    # Preprocessing + clusters (needed for the homotypic model)
    # ---------------------------------------------------------
    adata = processing_utils.normalize_and_hvg(adata, n_top_genes=cfg.n_top_genes)
    adata = processing_utils.scale_and_pca(
        adata,
        n_comps=cfg.n_comps,
        random_state=cfg.random_state,
    )
    adata = processing_utils.neighbors_and_umap(
        adata,
        n_pcs=cfg.n_pcs,
        n_neighbors=cfg.n_neighbors,
        random_state=cfg.random_state,
    )
    adata = processing_utils.cluster_cells(
        adata,
        resolution=cfg.resolution,
        method=cfg.cluster_method,
        key_added=cfg.cluster_key,
        random_state=cfg.random_state,
    )

    figdir = Path("doublets")
    if cfg.make_figures:
        plot_utils.plot_pca_elbow(adata, figdir, n_pcs_used=cfg.n_pcs)
        plot_utils.umap_plots(adata, keys=[cfg.cluster_key], figdir=figdir, prefix="pre_doublet_umap")

    # ---------------------------------------------------------
    # pK sweep (diagnostic unless pk is unset)
    # ---------------------------------------------------------
    pk_optimal = None
    sweep_stats = None
    if cfg.run_pk_sweep:
        sweep = doublet_utils.param_sweep(
            adata,
            cfg.sweep_pn_values,
            cfg.sweep_pk_values,
            max_cells=cfg.sweep_max_cells,
            n_top_genes=cfg.n_top_genes,
            n_pcs=cfg.n_pcs,
            n_jobs=cfg.n_jobs,
            random_state=cfg.random_state,
        )
        stats = doublet_utils.summarize_sweep(sweep)
        pk_optimal, sweep_stats = doublet_utils.find_optimal_pk(stats)
        LOGGER.info("BCmvn optimum at pK=%g", pk_optimal)

    pk = cfg.pk if cfg.pk is not None else pk_optimal
    LOGGER.info("Using pN=%g, pK=%g", cfg.pn, pk)

    if cfg.make_figures and sweep_stats is not None:
        plot_utils.plot_pk_sweep(sweep_stats, figdir, chosen_pk=pk)

    # ---------------------------------------------------------
    # pANN + classification
    # ---------------------------------------------------------
    adata.obs["pANN"] = doublet_utils.compute_pann(
        adata,
        pn=cfg.pn,
        pk=pk,
        n_top_genes=cfg.n_top_genes,
        n_pcs=cfg.n_pcs,
        random_state=cfg.random_state,
    )

    homotypic_key = cfg.homotypic_key or cfg.cluster_key
    if homotypic_key not in adata.obs:
        raise KeyError(f"homotypic_key '{homotypic_key}' not found in adata.obs")

    homotypic_prop = doublet_utils.model_homotypic(adata.obs[homotypic_key]) if cfg.adjust_homotypic else 0.0
    n_exp_poi, n_exp_adj = doublet_utils.expected_doublets(
        adata.n_obs,
        rate=cfg.doublet_rate,
        homotypic_prop=homotypic_prop,
    )

    pann = adata.obs["pANN"].to_numpy()
    categories = ["Singlet", "Doublet"]
    calls_poi = doublet_utils.classify_doublets(pann, n_exp_poi)
    calls_adj = doublet_utils.classify_doublets(pann, n_exp_adj)
    adata.obs["doublet_class_poi"] = pd.Categorical(calls_poi, categories=categories)
    adata.obs["doublet_class"] = pd.Categorical(calls_adj, categories=categories)

    adata.uns["doublets"] = {
        "method": "pN/pK artificial nearest neighbors",
        "pN": float(cfg.pn),
        "pK": float(pk),
        "pK_optimal": float("nan") if pk_optimal is None else float(pk_optimal),
        "doublet_rate": float(cfg.doublet_rate),
        "homotypic_key": homotypic_key,
        "homotypic_prop": float(homotypic_prop),
        "nExp_poi": int(n_exp_poi),
        "nExp_adj": int(n_exp_adj),
        "n_called_poi": int((calls_poi == "Doublet").sum()),
        "n_called_adj": int((calls_adj == "Doublet").sum()),
        "removed": bool(cfg.remove_doublets),
    }
    if sweep_stats is not None:
        adata.uns["doublets"]["pk_sweep"] = sweep_stats

    if cfg.make_figures:
        plot_utils.doublet_plots(adata, figdir=figdir)

    # ---------------------------------------------------------
    # Removal
    # ---------------------------------------------------------
    n_before = adata.n_obs
    if cfg.remove_doublets:
        adata = adata[(adata.obs["doublet_class"] == "Singlet").to_numpy()].copy()

    doublet_utils._log_doublet_cleanup(
        n_before=n_before,
        n_after=adata.n_obs,
        pn=cfg.pn,
        pk=pk,
        n_exp_poi=n_exp_poi,
        n_exp_adj=n_exp_adj,
        homotypic_prop=homotypic_prop,
        pk_optimal=pk_optimal,
    )

    out_path = io_utils.checkpoint_path(cfg.output_dir, cfg.output_name, cfg.checkpoint_format)
    io_utils.save_dataset(adata, out_path, fmt=cfg.checkpoint_format)

    LOGGER.info("Finished find-doublets")
    return adata
