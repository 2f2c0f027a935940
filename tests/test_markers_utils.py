import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scanpy as sc
from scipy import sparse

from scwalk import markers_utils as mu


def clustered_adata(n_per_group=60, n_genes=200, seed=0):
    """Clusters '0' and '1' with genes 0-19 and 20-39 as their markers."""
    rng = np.random.default_rng(seed)
    X = rng.poisson(0.5, (2 * n_per_group, n_genes)).astype(np.float32)
    X[:n_per_group, :20] += rng.poisson(6.0, (n_per_group, 20))
    X[n_per_group:, 20:40] += rng.poisson(6.0, (n_per_group, 20))

    adata = ad.AnnData(sparse.csr_matrix(X))
    adata.obs_names = [f"cell_{i}" for i in range(adata.n_obs)]
    adata.var_names = [f"gene_{i}" for i in range(n_genes)]
    adata.obs["leiden"] = pd.Categorical(["0"] * n_per_group + ["1"] * n_per_group)

    sc.pp.normalize_total(adata, target_sum=1e4)
    sc.pp.log1p(adata)
    adata.layers["lognorm"] = adata.X.copy()
    return adata


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def test_coerce_pts_columns():
    df = pd.DataFrame({"names": ["a"], "pct_nz_group": [0.5], "pct_nz_reference": [0.1]})
    out = mu._coerce_pts_columns(df)
    assert {"pct_in", "pct_rest"} <= set(out.columns)

    df = pd.DataFrame({"names": ["a"], "pts": [0.5], "pts_rest": [0.1]})
    assert {"pct_in", "pct_rest"} <= set(mu._coerce_pts_columns(df).columns)

    out = mu._coerce_pts_columns(pd.DataFrame({"names": ["a"]}))
    assert out["pct_in"].isna().all()


def test_apply_min_pct_filters_either_group():
    df = pd.DataFrame(
        {
            "gene": ["in_only", "rest_only", "neither"],
            "pct_in": [0.5, 0.1, 0.1],
            "pct_rest": [0.0, 0.3, 0.2],
        }
    )
    out = mu._apply_min_pct_filters(df, min_pct=0.25)
    assert out["gene"].tolist() == ["in_only", "rest_only"]


def test_apply_min_pct_filters_missing_fractions_is_noop():
    df = pd.DataFrame({"gene": ["a", "b"], "pct_in": [np.nan, np.nan], "pct_rest": [np.nan, np.nan]})
    assert len(mu._apply_min_pct_filters(df, min_pct=0.25)) == 2


# ---------------------------------------------------------------------
# compute_cluster_markers
# ---------------------------------------------------------------------
def test_compute_cluster_markers_finds_planted_genes():
    adata = clustered_adata()
    markers = mu.compute_cluster_markers(adata, "leiden")

    assert list(markers.columns) == mu.MARKER_COLUMNS
    assert set(markers["cluster"]) == {"0", "1"}
    assert (markers["logfoldchanges"] >= 0.25).all()
    assert ((markers["pct_in"] >= 0.25) | (markers["pct_rest"] >= 0.25)).all()

    top0 = markers.loc[markers["cluster"] == "0", "gene"].head(10)
    assert top0.isin([f"gene_{i}" for i in range(20)]).all()

    for _, df in markers.groupby("cluster"):
        assert df["pvals_adj"].is_monotonic_increasing


def test_compute_cluster_markers_two_sided():
    adata = clustered_adata()
    markers = mu.compute_cluster_markers(adata, "leiden", positive_only=False)

    assert (markers["logfoldchanges"].abs() >= 0.25).all()
    assert (markers["logfoldchanges"] < 0).any()


def test_compute_cluster_markers_errors():
    adata = clustered_adata()
    with pytest.raises(KeyError):
        mu.compute_cluster_markers(adata, "louvain")

    adata.obs["tiny"] = pd.Categorical(["a"] * (adata.n_obs - 1) + ["b"])
    with pytest.raises(ValueError):
        mu.compute_cluster_markers(adata, "tiny")
