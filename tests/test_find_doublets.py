import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

import scwalk.find_doublets as fd
from scwalk.config import DoubletConfig


def post_qc_adata(n_per_group=120, n_genes=300, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.poisson(1.0, (2 * n_per_group, n_genes)).astype(np.float32)
    X[:n_per_group, :50] += rng.poisson(8.0, (n_per_group, 50))
    X[n_per_group:, 50:100] += rng.poisson(8.0, (n_per_group, 50))

    adata = ad.AnnData(sparse.csr_matrix(X))
    adata.obs_names = [f"cell_{i}" for i in range(adata.n_obs)]
    adata.var_names = [f"gene_{i}" for i in range(n_genes)]
    adata.layers["counts"] = adata.X.copy()
    return adata


@pytest.fixture
def patched_io(monkeypatch):
    saved = {}

    monkeypatch.setattr(fd.io_utils, "load_dataset", lambda path: post_qc_adata())

    def _save(adata, out_path, fmt="h5ad"):
        saved["adata"] = adata
        saved["path"] = out_path
        return out_path

    monkeypatch.setattr(fd.io_utils, "save_dataset", _save)
    return saved


def base_cfg(tmp_path, **kw):
    params = dict(
        input_path=tmp_path / "adata.qc.h5ad",
        make_figures=False,
        n_comps=20,
        n_pcs=10,
        n_neighbors=15,
        doublet_rate=0.05,
    )
    params.update(kw)
    return DoubletConfig(**params)


def test_run_find_doublets_fixed_pk(tmp_path, patched_io):
    cfg = base_cfg(tmp_path, pk=0.1, run_pk_sweep=False)
    adata = fd.run_find_doublets(cfg)

    info = adata.uns["doublets"]
    assert info["pN"] == 0.25
    assert info["pK"] == 0.1
    assert np.isnan(info["pK_optimal"])
    assert info["nExp_poi"] == 12
    assert 0 < info["homotypic_prop"] <= 1
    assert info["nExp_adj"] == int(round(12 * (1 - info["homotypic_prop"])))

    # adjusted doublets removed, pANN + both calls kept for the survivors
    assert info["n_called_adj"] >= info["nExp_adj"]
    assert adata.n_obs == 240 - info["n_called_adj"]
    assert (adata.obs["doublet_class"] == "Singlet").all()
    assert {"pANN", "doublet_class", "doublet_class_poi", "leiden"} <= set(adata.obs.columns)

    assert patched_io["path"] == tmp_path / "adata.singlets.h5ad"


def test_run_find_doublets_keep_doublets(tmp_path, patched_io):
    cfg = base_cfg(tmp_path, pk=0.1, run_pk_sweep=False, remove_doublets=False, adjust_homotypic=False)
    adata = fd.run_find_doublets(cfg)

    info = adata.uns["doublets"]
    assert adata.n_obs == 240
    assert (adata.obs["doublet_class"] == "Doublet").sum() == info["n_called_adj"] >= 12
    assert (adata.obs["doublet_class_poi"] == "Doublet").sum() == info["n_called_poi"] >= 12

    # called doublets are the highest pANN cells
    called = adata.obs.loc[adata.obs["doublet_class"] == "Doublet", "pANN"]
    rest = adata.obs.loc[adata.obs["doublet_class"] == "Singlet", "pANN"]
    assert called.min() >= rest.max()


def test_run_find_doublets_pk_from_sweep(tmp_path, patched_io):
    cfg = base_cfg(
        tmp_path,
        pk=None,
        run_pk_sweep=True,
        sweep_pn_values=[0.15, 0.25],
        sweep_pk_values=[0.02, 0.05, 0.1],
    )
    adata = fd.run_find_doublets(cfg)

    info = adata.uns["doublets"]
    assert info["pK"] == info["pK_optimal"]
    assert info["pK"] in (0.02, 0.05, 0.1)
    sweep = info["pk_sweep"]
    assert isinstance(sweep, pd.DataFrame)
    assert sorted(sweep["pK"]) == [0.02, 0.05, 0.1]


def test_run_find_doublets_unknown_homotypic_key(tmp_path, patched_io):
    cfg = base_cfg(tmp_path, pk=0.1, run_pk_sweep=False, homotypic_key="cell_type")
    with pytest.raises(KeyError):
        fd.run_find_doublets(cfg)


def test_run_find_doublets_writes_readable_checkpoint(tmp_path):
    inp = tmp_path / "adata.qc.h5ad"
    post_qc_adata().write_h5ad(inp)

    cfg = base_cfg(
        tmp_path,
        pk=0.1,
        sweep_pn_values=[0.15, 0.25],
        sweep_pk_values=[0.05, 0.1],
    )
    fd.run_find_doublets(cfg)

    out = fd.io_utils.load_dataset(tmp_path / "adata.singlets.h5ad")
    info = out.uns["doublets"]
    assert info["pK"] == 0.1
    assert out.n_obs == 240 - info["n_called_adj"]
    assert isinstance(info["pk_sweep"], pd.DataFrame)
    assert sorted(info["pk_sweep"]["pK"]) == [0.05, 0.1]
    assert {"pANN", "doublet_class", "doublet_class_poi"} <= set(out.obs.columns)
