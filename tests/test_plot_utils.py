# tests/test_plot_utils.py

import logging

import numpy as np
import pandas as pd
import pytest
from pathlib import Path

import matplotlib as mpl
mpl.use("Agg")  # headless backend for tests
import matplotlib.pyplot as plt

import scwalk.plot_utils as pu


# ---------------------------------------------------------------------
# Small AnnData helper
# ---------------------------------------------------------------------
def synthetic_adata(n=50, g=10):
    from anndata import AnnData
    X = np.random.poisson(1.0, (n, g)).astype(np.float32)
    adata = AnnData(X)
    adata.obs_names = [f"cell{i}" for i in range(n)]
    adata.var_names = [f"gene{i}" for i in range(g)]
    return adata


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------
@pytest.fixture
def reset_root_figdir(monkeypatch):
    monkeypatch.setattr(pu, "ROOT_FIGDIR", None, raising=False)
    monkeypatch.setattr(pu, "FIGURE_FORMATS", ["png", "pdf"], raising=False)
    yield


@pytest.fixture
def mock_save_multi(monkeypatch):
    calls = []

    def _save(stem, figdir, fig=None):
        calls.append((stem, Path(figdir)))
        plt.close("all")

    monkeypatch.setattr(pu, "save_multi", _save)
    return calls


@pytest.fixture
def mock_scanpy_plots(monkeypatch):
    def _noop(*args, **kwargs):
        return None

    monkeypatch.setattr(pu.sc.pl, "umap", _noop, raising=False)
    monkeypatch.setattr(pu.sc.pl, "violin", _noop, raising=False)
    monkeypatch.setattr(pu.sc.pl, "scatter", _noop, raising=False)
    monkeypatch.setattr(pu.sc.pl, "dotplot", _noop, raising=False)
    return True


# ---------------------------------------------------------------------
# Basic configuration / save_multi
# ---------------------------------------------------------------------
def test_setup_scanpy_figs_and_save_multi(tmp_path, reset_root_figdir):
    pu.setup_scanpy_figs(tmp_path / "figs", formats=["png", "svg"])

    fig = plt.figure()
    pu.save_multi("test_plot", Path("QC_plots"), fig=fig)

    assert (tmp_path / "figs" / "png" / "QC_plots" / "test_plot.png").exists()
    assert (tmp_path / "figs" / "svg" / "QC_plots" / "test_plot.svg").exists()


def test_save_multi_without_setup_raises(tmp_path, reset_root_figdir):
    fig = plt.figure()
    with pytest.raises(RuntimeError):
        pu.save_multi("x", Path("sub"), fig=fig)
    plt.close(fig)


# ---------------------------------------------------------------------
# QC
# ---------------------------------------------------------------------
def test_run_qc_plots(tmp_path, reset_root_figdir, mock_scanpy_plots, mock_save_multi):
    pu.setup_scanpy_figs(tmp_path)
    adata = synthetic_adata()
    adata.obs["n_genes_by_counts"] = np.random.randint(100, 300, adata.n_obs)
    adata.obs["total_counts"] = np.random.randint(500, 3000, adata.n_obs)
    adata.obs["pct_counts_mt"] = np.random.uniform(0, 20, adata.n_obs)

    pu.run_qc_plots(adata, "prefilter", groupby=None, max_pct_mt=10.0)

    stems = [s for s, _ in mock_save_multi]
    assert stems == [
        "QC_violin_prefilter",
        "QC_complexity_prefilter",
        "QC_scatter_mt_prefilter",
        "prefilter_QC_hist_pct_mt",
    ]


# ---------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------
def test_umap_plots_skips_missing_keys(tmp_path, reset_root_figdir, mock_scanpy_plots, mock_save_multi, caplog):
    pu.setup_scanpy_figs(tmp_path)
    adata = synthetic_adata()
    adata.obsm["X_umap"] = np.random.randn(adata.n_obs, 2)
    adata.obs["leiden"] = pd.Categorical(["0"] * 25 + ["1"] * 25)

    with caplog.at_level(logging.WARNING):
        pu.umap_plots(adata, keys=["leiden", "phase"], figdir=Path("clustering"))

    assert mock_save_multi == [("umap_leiden", Path("clustering"))]
    assert "phase" in caplog.text


def test_umap_plots_without_embedding(tmp_path, reset_root_figdir, mock_save_multi):
    pu.setup_scanpy_figs(tmp_path)
    pu.umap_plots(synthetic_adata(), keys=["leiden"], figdir=Path("clustering"))
    assert mock_save_multi == []


def test_plot_pca_elbow(tmp_path, reset_root_figdir, mock_save_multi):
    pu.setup_scanpy_figs(tmp_path)
    adata = synthetic_adata()
    adata.uns["pca"] = {"variance_ratio": np.array([0.4, 0.2, 0.1, 0.05, 0.04, 0.03])}
    adata.uns["n_pcs_elbow"] = 3

    pu.plot_pca_elbow(adata, Path("clustering"), n_pcs_used=5)
    assert mock_save_multi == [("pca_elbow", Path("clustering"))]


# ---------------------------------------------------------------------
# Doublets
# ---------------------------------------------------------------------
def test_plot_pk_sweep(tmp_path, reset_root_figdir, mock_save_multi):
    pu.setup_scanpy_figs(tmp_path)
    stats = pd.DataFrame({"pK": [0.01, 0.05, 0.1], "BCmetric": [10.0, 50.0, 20.0]})

    pu.plot_pk_sweep(stats, Path("doublets"), chosen_pk=0.1)
    assert mock_save_multi == [("pk_sweep_bcmvn", Path("doublets"))]


def test_doublet_plots(tmp_path, reset_root_figdir, mock_scanpy_plots, mock_save_multi):
    pu.setup_scanpy_figs(tmp_path)
    adata = synthetic_adata()
    adata.obs["pANN"] = np.linspace(0, 1, adata.n_obs)
    adata.obs["doublet_class"] = pd.Categorical(["Singlet"] * 45 + ["Doublet"] * 5)
    adata.obsm["X_umap"] = np.random.randn(adata.n_obs, 2)

    pu.doublet_plots(adata, figdir=Path("doublets"))

    stems = [s for s, _ in mock_save_multi]
    assert stems == ["pann_hist", "doublets_umap_doublet_class", "doublets_umap_pANN"]


def test_doublet_plots_missing_columns(tmp_path, reset_root_figdir, mock_save_multi):
    pu.setup_scanpy_figs(tmp_path)
    pu.doublet_plots(synthetic_adata(), figdir=Path("doublets"))
    assert mock_save_multi == []


# ---------------------------------------------------------------------
# Markers
# ---------------------------------------------------------------------
def test_marker_dotplot(tmp_path, reset_root_figdir, mock_scanpy_plots, mock_save_multi):
    pu.setup_scanpy_figs(tmp_path)
    adata = synthetic_adata()
    adata.obs["leiden"] = pd.Categorical(["0"] * 25 + ["1"] * 25)
    markers = pd.DataFrame({"cluster": ["0", "0", "1"], "gene": ["gene0", "gene1", "gene2"]})

    pu.marker_dotplot(adata, markers, groupby="leiden", top_n=1, figdir=Path("markers"))
    assert mock_save_multi == [("markers_dotplot", Path("markers"))]

    mock_save_multi.clear()
    pu.marker_dotplot(adata, markers.iloc[0:0], groupby="leiden", top_n=1, figdir=Path("markers"))
    assert mock_save_multi == []
