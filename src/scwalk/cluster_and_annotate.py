from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd

from .config import AnnotateConfig, ClusterAnnotateConfig
from . import io_utils
from . import markers_utils
from . import plot_utils
from . import processing_utils

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Resubset
# ---------------------------------------------------------------------
def resubset(
    adata: ad.AnnData,
    subset_key: str,
    keep: Optional[Sequence[str]] = None,
    drop: Optional[Sequence[str]] = None,
) -> ad.AnnData:
    """
    Keep (or drop) whole clusters of ``subset_key``. The previous cluster id
    is preserved as ``obs['<subset_key>_pre_resubset']``.
    """
    if keep and drop:
        raise ValueError("Pass either keep or drop, not both")
    if subset_key not in adata.obs:
        raise KeyError(f"subset_key '{subset_key}' not found in adata.obs")

    ids = adata.obs[subset_key].astype(str)
    present = set(ids.unique())

    requested = [str(c) for c in (keep or drop or [])]
    unknown = sorted(set(requested) - present)
    if unknown:
        raise ValueError(
            f"Unknown {subset_key} ids: {unknown}. Available: {sorted(present)}"
        )

    if keep:
        mask = ids.isin(requested).to_numpy()
    elif drop:
        mask = ~ids.isin(requested).to_numpy()
    else:
        LOGGER.info("No clusters selected for removal; re-processing all %d cells.", adata.n_obs)
        mask = np.ones(adata.n_obs, dtype=bool)

    if mask.sum() == 0:
        raise ValueError("Resubset removed every cell")

    adata = adata[mask].copy()
    adata.obs[f"{subset_key}_pre_resubset"] = pd.Categorical(ids.to_numpy()[mask])

    # genes with no counts left in the subset
    if "counts" in adata.layers:
        detected = np.asarray((adata.layers["counts"] > 0).sum(axis=0)).ravel() > 0
        if not detected.all():
            adata = adata[:, detected].copy()

    LOGGER.info("Resubset: %d cells × %d genes", adata.n_obs, adata.n_vars)
    return adata


# ---------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------
def apply_cluster_labels(
    adata: ad.AnnData,
    cluster_key: str,
    labels: Mapping[str, str],
    key_added: str = "cell_type",
) -> ad.AnnData:
    """
    Map cluster ids to labels (several clusters may share a label).
    Clusters missing from ``labels`` keep their id.
    """
    if cluster_key not in adata.obs:
        raise KeyError(f"cluster_key '{cluster_key}' not found in adata.obs")

    clusters = adata.obs[cluster_key].astype(str)
    labels = {str(k).strip(): str(v) for k, v in labels.items()}

    present = set(clusters.unique())
    unknown = sorted(set(labels) - present)
    if unknown:
        raise ValueError(
            f"Labels given for clusters not in '{cluster_key}': {unknown}"
        )

    unmapped = sorted(present - set(labels))
    if unmapped:
        LOGGER.warning("No label for clusters %s; keeping their ids.", unmapped)

    adata.obs[key_added] = pd.Categorical(clusters.map(labels).fillna(clusters).to_numpy())
    adata.uns[f"{key_added}_labels"] = labels

    LOGGER.info(
        "Annotated %d clusters into %d labels -> obs['%s']",
        len(present),
        adata.obs[key_added].nunique(),
        key_added,
    )
    return adata


def _resolve_labels(annotation_csv: Optional[Path], cluster_labels: Mapping[str, str]) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    if annotation_csv is not None:
        labels.update(io_utils.read_cluster_labels(annotation_csv))
    # inline labels win over the table
    labels.update({str(k): str(v) for k, v in cluster_labels.items()})
    return labels


# ---------------------------------------------------------------------
# Orchestrators
# ---------------------------------------------------------------------
def run_cluster_and_annotate(cfg: ClusterAnnotateConfig) -> ad.AnnData:
    LOGGER.info("Starting cluster-and-annotate")

    if cfg.make_figures:
        plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)

    adata = io_utils.load_dataset(cfg.input_path)
    adata = resubset(adata, cfg.subset_key, keep=cfg.keep_clusters, drop=cfg.drop_clusters)

    # ---------------------------------------------------------
    # Normalize, regress, embed, cluster
    # ---------------------------------------------------------
    adata = processing_utils.normalize_and_hvg(
        adata,
        n_top_genes=cfg.n_top_genes,
        batch_key=cfg.batch_key,
    )

    regress_vars = []
    if cfg.regress_cell_cycle:
        regress_vars += processing_utils.score_cell_cycle(
            adata,
            mode=cfg.cell_cycle_mode,
            random_state=cfg.random_state,
        )
    regress_vars += list(cfg.regress_covariates)

    adata = processing_utils.scale_and_pca(
        adata,
        regress_vars,
        n_comps=cfg.n_comps,
        max_value=cfg.scale_max_value,
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
        key_added=cfg.label_key,
        random_state=cfg.random_state,
    )

    figdir = Path("clustering")
    if cfg.make_figures:
        plot_utils.plot_pca_elbow(adata, figdir, n_pcs_used=cfg.n_pcs)
        keys = [cfg.label_key, f"{cfg.subset_key}_pre_resubset", "phase"]
        if cfg.batch_key:
            keys.append(cfg.batch_key)
        plot_utils.umap_plots(adata, keys=keys, figdir=figdir)

    # ---------------------------------------------------------
    # Markers
    # ---------------------------------------------------------
    if cfg.run_markers:
        markers = markers_utils.compute_cluster_markers(
            adata,
            cfg.label_key,
            method=cfg.marker_method,
            min_pct=cfg.marker_min_pct,
            logfc_threshold=cfg.marker_logfc_threshold,
            positive_only=cfg.marker_positive_only,
        )
        io_utils.export_marker_tables(markers, cfg.markers_dir)

        if cfg.make_figures:
            plot_utils.marker_dotplot(
                adata,
                markers,
                groupby=cfg.label_key,
                top_n=cfg.marker_top_n,
                figdir=Path("markers"),
            )

    # ---------------------------------------------------------
    # Labels (optional)
    # ---------------------------------------------------------
    labels = _resolve_labels(cfg.annotation_csv, cfg.cluster_labels)
    if labels:
        adata = apply_cluster_labels(adata, cfg.label_key, labels, key_added=cfg.annotation_key)
        io_utils.export_cluster_annotations(
            adata,
            [cfg.label_key, cfg.annotation_key],
            cfg.output_dir / "cluster_annotations.csv",
        )
        if cfg.make_figures:
            plot_utils.umap_plots(adata, keys=[cfg.annotation_key], figdir=figdir, prefix="annotated_umap")

    out_path = io_utils.checkpoint_path(cfg.output_dir, cfg.output_name, cfg.checkpoint_format)
    io_utils.save_dataset(adata, out_path, fmt=cfg.checkpoint_format)

    LOGGER.info("Finished cluster-and-annotate")
    return adata


def run_annotate(cfg: AnnotateConfig) -> ad.AnnData:
    """Label an existing clustered snapshot without re-running any analysis."""
    LOGGER.info("Starting annotate")

    adata = io_utils.load_dataset(cfg.input_path)
    labels = _resolve_labels(cfg.annotation_csv, cfg.cluster_labels)
    adata = apply_cluster_labels(adata, cfg.cluster_key, labels, key_added=cfg.annotation_key)

    if cfg.make_figures:
        plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)
        plot_utils.umap_plots(
            adata,
            keys=[cfg.annotation_key],
            figdir=Path("annotation"),
            prefix="annotated_umap",
        )

    io_utils.save_dataset(adata, cfg.output_path, fmt=cfg.checkpoint_format)
    io_utils.export_cluster_annotations(adata, [cfg.cluster_key, cfg.annotation_key], cfg.export_csv)

    LOGGER.info("Finished annotate")
    return adata
