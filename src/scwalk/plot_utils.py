from __future__ import annotations

from pathlib import Path
from typing import Sequence

import logging

import matplotlib as mpl
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad

LOGGER = logging.getLogger(__name__)

# -------------------------------------------------------------------------
# Global styling
# -------------------------------------------------------------------------
mpl.rcParams["axes.spines.top"] = False
mpl.rcParams["axes.spines.right"] = False
mpl.rcParams["axes.linewidth"] = 0.6
mpl.rcParams["axes.edgecolor"] = "#555555"

mpl.rcParams["xtick.color"] = "#333333"
mpl.rcParams["ytick.color"] = "#333333"

FIGURE_FORMATS = ["png", "pdf"]
ROOT_FIGDIR: Path | None = None


# -------------------------------------------------------------------------
# Setup + saving
# -------------------------------------------------------------------------
def set_figure_formats(formats: Sequence[str]) -> None:
    global FIGURE_FORMATS
    FIGURE_FORMATS = list(formats)


def setup_scanpy_figs(figdir: Path, formats: Sequence[str] | None = None) -> None:
    """
    Point Scanpy and save_multi() at ``figdir`` and switch off interactive display.
    """
    global ROOT_FIGDIR
    figdir = Path(figdir)
    figdir.mkdir(parents=True, exist_ok=True)
    ROOT_FIGDIR = figdir.resolve()

    if formats is not None:
        set_figure_formats(formats)

    sc.settings.figdir = ROOT_FIGDIR
    sc.settings.autoshow = False
    sc.settings.autosave = False

    sc.settings.set_figure_params(
        dpi=100,
        dpi_save=300,
        facecolor="white",
        frameon=False,
        vector_friendly=True,
        fontsize=10,
        figsize=(6, 5),
        format=FIGURE_FORMATS[0],
    )


def save_multi(stem: str, figdir: Path, fig=None) -> None:
    """
    Save the current matplotlib figure (or ``fig``) once per configured format
    to ROOT_FIGDIR/<ext>/<figdir>/<stem>.<ext>, then close it.
    """
    if ROOT_FIGDIR is None:
        raise RuntimeError("ROOT_FIGDIR is not set. Call setup_scanpy_figs() first.")

    if fig is not None:
        plt.figure(fig.number)

    for ext in FIGURE_FORMATS:
        outdir = ROOT_FIGDIR / ext / Path(figdir)
        outdir.mkdir(parents=True, exist_ok=True)
        outfile = outdir / f"{stem}.{ext}"
        LOGGER.info("Saving figure: %s", outfile)
        plt.savefig(outfile, dpi=300, bbox_inches="tight")

    plt.close()


def _clean_axes(ax):
    ax.grid(False)
    for spine in ["left", "bottom"]:
        ax.spines[spine].set_visible(True)
        ax.spines[spine].set_alpha(0.5)
    ax.spines["right"].set_visible(False)
    ax.spines["top"].set_visible(False)
    return ax


# -------------------------------------------------------------------------
# QC
# -------------------------------------------------------------------------
QC_METRICS = ("n_genes_by_counts", "total_counts", "pct_counts_mt")


def qc_violin_panels(adata: ad.AnnData, stage: str, groupby: str | None = None) -> None:
    """Violin panels of the three filtering metrics, one panel per metric."""
    metrics = [m for m in QC_METRICS if m in adata.obs]
    if not metrics:
        LOGGER.warning("No QC metrics in adata.obs; skipping violin panels (%s)", stage)
        return

    if groupby is not None and groupby not in adata.obs:
        groupby = None

    sc.pl.violin(
        adata,
        metrics,
        groupby=groupby,
        jitter=0.4,
        multi_panel=True,
        show=False,
    )
    save_multi(f"QC_violin_{stage}", Path("QC_plots") / "qc_metrics")


def qc_scatter_panels(adata: ad.AnnData, stage: str) -> None:
    """
    Complexity (counts vs genes, colored by mt%) and counts vs mt% scatters.
    """
    figdir = Path("QC_plots") / "qc_scatter"

    sc.pl.scatter(adata, x="total_counts", y="n_genes_by_counts", color="pct_counts_mt", show=False)
    save_multi(f"QC_complexity_{stage}", figdir)

    sc.pl.scatter(adata, x="total_counts", y="pct_counts_mt", show=False)
    save_multi(f"QC_scatter_mt_{stage}", figdir)


def plot_mt_histogram(adata: ad.AnnData, stage: str, max_pct_mt: float | None = None) -> None:
    fig, ax = plt.subplots(figsize=(5, 4))
    _clean_axes(ax)

    ax.hist(adata.obs["pct_counts_mt"], bins=50, color="steelblue", alpha=0.85)
    if max_pct_mt is not None:
        ax.axvline(max_pct_mt, color="red", linestyle="--", lw=0.8, label=f"max = {max_pct_mt:g}%")
        ax.legend(frameon=False)

    ax.set_xlabel("Percent mitochondrial counts")
    ax.set_ylabel("Number of cells")
    ax.set_title("Distribution of mitochondrial content")

    fig.tight_layout()
    save_multi(f"{stage}_QC_hist_pct_mt", Path("QC_plots") / "qc_metrics", fig)


def run_qc_plots(adata: ad.AnnData, stage: str, *, groupby: str | None, max_pct_mt: float | None) -> None:
    qc_violin_panels(adata, stage, groupby=groupby)
    qc_scatter_panels(adata, stage)
    plot_mt_histogram(adata, stage, max_pct_mt=max_pct_mt)


# -------------------------------------------------------------------------
# Embeddings
# -------------------------------------------------------------------------
def plot_pca_elbow(adata: ad.AnnData, figdir: Path, n_pcs_used: int | None = None) -> None:
    """PCA variance-ratio curve with the detected elbow and the PCs actually used."""
    vr = np.asarray(adata.uns["pca"]["variance_ratio"])
    pcs = np.arange(1, len(vr) + 1)

    fig, ax = plt.subplots(figsize=(5, 4))
    _clean_axes(ax)
    ax.plot(pcs, vr, marker="o", ms=3, lw=1, color="steelblue")

    elbow = adata.uns.get("n_pcs_elbow")
    if elbow is not None:
        ax.axvline(elbow, color="orange", linestyle=":", label=f"Elbow = {elbow}")
    if n_pcs_used is not None:
        ax.axvline(n_pcs_used, color="red", linestyle="--", label=f"Used = {n_pcs_used}")

    ax.set_xlabel("Principal component")
    ax.set_ylabel("Variance ratio")
    ax.set_title("PCA elbow")
    ax.legend(frameon=False)
    fig.tight_layout()
    save_multi("pca_elbow", figdir, fig)


def umap_plots(adata: ad.AnnData, *, keys: Sequence[str], figdir: Path, prefix: str = "umap") -> None:
    """One UMAP per obs key; missing keys are skipped with a warning."""
    if "X_umap" not in adata.obsm:
        LOGGER.warning("Skipping UMAP plots: X_umap not found.")
        return

    for key in keys:
        if key not in adata.obs:
            LOGGER.warning("Key '%s' not found in adata.obs; skipping UMAP", key)
            continue

        categorical = not pd.api.types.is_numeric_dtype(adata.obs[key])
        fig = sc.pl.umap(
            adata,
            color=key,
            legend_loc="on data" if categorical and adata.obs[key].nunique() > 8 else "right margin",
            show=False,
            return_fig=True,
        )
        save_multi(f"{prefix}_{key}", figdir, fig)


# -------------------------------------------------------------------------
# Doublets
# -------------------------------------------------------------------------
def plot_pk_sweep(pk_stats: pd.DataFrame, figdir: Path, chosen_pk: float | None = None) -> None:
    """BCmvn across pK values; the optimum is the peak."""
    fig, ax = plt.subplots(figsize=(7, 4))
    _clean_axes(ax)

    ax.plot(pk_stats["pK"], pk_stats["BCmetric"], marker="o", ms=3, color="steelblue")

    best = pk_stats.loc[pk_stats["BCmetric"].idxmax()]
    ax.axvline(best["pK"], color="orange", linestyle=":", label=f"BCmvn max pK = {best['pK']:g}")
    if chosen_pk is not None:
        ax.axvline(chosen_pk, color="red", linestyle="--", label=f"used pK = {chosen_pk:g}")

    ax.set_xlabel("pK")
    ax.set_ylabel("BCmvn")
    ax.set_title("pK sweep (mean-variance normalized bimodality)")
    ax.legend(frameon=False)
    fig.tight_layout()
    save_multi("pk_sweep_bcmvn", figdir, fig)


def doublet_plots(
    adata: ad.AnnData,
    *,
    figdir: Path,
    pann_key: str = "pANN",
    class_key: str = "doublet_class",
) -> None:
    """
    pANN distribution with the called-doublet cutoff, and UMAP by doublet call.
    Must be called BEFORE doublets are removed.
    """
    if pann_key not in adata.obs or class_key not in adata.obs:
        LOGGER.warning("Skipping doublet plots; missing '%s' or '%s'.", pann_key, class_key)
        return

    pann = adata.obs[pann_key].to_numpy()
    called = (adata.obs[class_key] == "Doublet").to_numpy()

    fig, ax = plt.subplots(figsize=(6, 4))
    _clean_axes(ax)
    ax.hist(pann, bins=50, color="steelblue", alpha=0.85)
    if called.any():
        thr = float(pann[called].min())
        ax.axvline(thr, color="red", lw=0.8, linestyle="--", label=f"cutoff = {thr:.3f}")
        ax.legend(frameon=False)
    ax.set_xlabel("Proportion of artificial nearest neighbors (pANN)")
    ax.set_ylabel("Cells")
    ax.set_title(f"pANN distribution ({int(called.sum())} doublets called)")
    fig.tight_layout()
    save_multi("pann_hist", figdir, fig)

    if "X_umap" in adata.obsm:
        umap_plots(adata, keys=[class_key, pann_key], figdir=figdir, prefix="doublets_umap")

    LOGGER.info("Generated doublet plots.")


# -------------------------------------------------------------------------
# Markers
# -------------------------------------------------------------------------
def marker_dotplot(
    adata: ad.AnnData,
    markers: pd.DataFrame,
    *,
    groupby: str,
    top_n: int,
    figdir: Path,
    stem: str = "markers_dotplot",
) -> None:
    """Dot plot of the top-N markers per cluster (taken from the filtered table)."""
    if markers.empty:
        LOGGER.warning("No markers passed filtering; skipping dot plot.")
        return

    top = markers.groupby("cluster", observed=True, sort=False).head(top_n)
    var_names = {
        str(cl): df["gene"].tolist()
        for cl, df in top.groupby("cluster", observed=True, sort=False)
    }

    sc.pl.dotplot(
        adata,
        var_names=var_names,
        groupby=groupby,
        layer="lognorm" if "lognorm" in adata.layers else None,
        standard_scale="var",
        show=False,
    )
    save_multi(stem, figdir)
