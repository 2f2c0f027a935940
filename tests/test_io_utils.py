import numpy as np
import pandas as pd
import pytest
import anndata as ad
from scipy import io as spio
from scipy import sparse

from scwalk import io_utils


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def write_10x_dir(path, n_cells=20, n_genes=15, seed=0):
    """Write a legacy (genes.tsv) Cell Ranger matrix directory."""
    rng = np.random.default_rng(seed)
    X = rng.poisson(2.0, (n_cells, n_genes))
    path.mkdir(parents=True)

    spio.mmwrite(str(path / "matrix.mtx"), sparse.coo_matrix(X.T))

    genes = pd.DataFrame(
        {
            "id": [f"ENSG{i:05d}" for i in range(n_genes)],
            "symbol": ["MT-CO1", "MT-ND1"] + [f"GENE{i}" for i in range(n_genes - 2)],
        }
    )
    genes.to_csv(path / "genes.tsv", sep="\t", header=False, index=False)

    half = n_cells // 2
    barcodes = [f"AAAC{i:06d}-1" for i in range(half)] + [f"TTTG{i:06d}-2" for i in range(n_cells - half)]
    pd.Series(barcodes).to_csv(path / "barcodes.tsv", sep="\t", header=False, index=False)
    return X


def small_adata(n=12, g=6):
    X = np.random.default_rng(1).poisson(1.0, (n, g)).astype(np.float32)
    adata = ad.AnnData(sparse.csr_matrix(X))
    adata.obs_names = [f"cell{i}" for i in range(n)]
    adata.var_names = [f"gene{i}" for i in range(g)]
    adata.obs["library_id"] = pd.Categorical(["1"] * (n // 2) + ["2"] * (n - n // 2))
    return adata


# ---------------------------------------------------------------------
# 10x loading
# ---------------------------------------------------------------------
def test_read_10x_matrix(tmp_path):
    mtx_dir = tmp_path / "filtered_feature_bc_matrix"
    X = write_10x_dir(mtx_dir)

    adata = io_utils.read_10x_matrix(mtx_dir)

    assert adata.shape == (20, 15)
    assert "MT-CO1" in adata.var_names
    assert np.allclose(adata.X.toarray(), X)
    assert list(adata.obs["library_id"].cat.categories) == ["1", "2"]
    assert (adata.obs["library_id"] == "2").sum() == 10


def test_read_10x_matrix_missing_dir(tmp_path):
    with pytest.raises(FileNotFoundError):
        io_utils.read_10x_matrix(tmp_path / "nope")


# ---------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------
def test_add_metadata_joins_on_library(tmp_path):
    adata = small_adata()
    tsv = tmp_path / "meta.tsv"
    pd.DataFrame({"library_id": ["1", "2"], "condition": ["ctrl", "treated"]}).to_csv(tsv, sep="\t", index=False)

    io_utils.add_metadata(adata, tsv, key="library_id")

    assert (adata.obs.loc[adata.obs["library_id"] == "2", "condition"] == "treated").all()


def test_add_metadata_missing_library_raises(tmp_path):
    adata = small_adata()
    tsv = tmp_path / "meta.tsv"
    pd.DataFrame({"library_id": ["1"], "condition": ["ctrl"]}).to_csv(tsv, sep="\t", index=False)

    with pytest.raises(ValueError):
        io_utils.add_metadata(adata, tsv, key="library_id")


def test_add_metadata_missing_column_raises(tmp_path):
    adata = small_adata()
    tsv = tmp_path / "meta.tsv"
    pd.DataFrame({"sample": ["1", "2"]}).to_csv(tsv, sep="\t", index=False)

    with pytest.raises(KeyError):
        io_utils.add_metadata(adata, tsv, key="library_id")


# ---------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------
def test_checkpoint_path(tmp_path):
    assert io_utils.checkpoint_path(tmp_path, "adata.qc", "h5ad") == tmp_path / "adata.qc.h5ad"


@pytest.mark.parametrize("fmt", ["h5ad", "zarr"])
def test_save_and_load_dataset(tmp_path, fmt):
    adata = small_adata()
    out = io_utils.save_dataset(adata, tmp_path / f"adata.qc.{fmt}", fmt=fmt)

    back = io_utils.load_dataset(out)
    assert back.shape == adata.shape
    assert list(back.obs_names) == list(adata.obs_names)


def test_save_dataset_unknown_format(tmp_path):
    with pytest.raises(ValueError):
        io_utils.save_dataset(small_adata(), tmp_path / "a.loom", fmt="loom")


def test_load_dataset_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        io_utils.load_dataset(tmp_path / "missing.h5ad")

    bad = tmp_path / "adata.rds"
    bad.write_text("x")
    with pytest.raises(ValueError):
        io_utils.load_dataset(bad)


# ---------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------
def test_export_marker_tables(tmp_path):
    markers = pd.DataFrame(
        {
            "cluster": ["0", "0", "1"],
            "gene": ["CD3E", "CD2", "MS4A1"],
            "pvals_adj": [1e-10, 1e-5, 1e-8],
        }
    )
    written = io_utils.export_marker_tables(markers, tmp_path / "markers")

    assert [p.name for p in written] == [
        "markers_all_clusters.csv",
        "markers_cluster_0.csv",
        "markers_cluster_1.csv",
    ]
    per_cluster = pd.read_csv(written[1])
    assert per_cluster["gene"].tolist() == ["CD3E", "CD2"]


def test_export_cluster_annotations(tmp_path):
    adata = small_adata()
    adata.obs["leiden"] = "0"
    adata.obs["cell_type"] = "T cells"

    out = tmp_path / "cluster_annotations.csv"
    io_utils.export_cluster_annotations(adata, ["leiden", "cell_type"], out)

    df = pd.read_csv(out)
    assert list(df.columns) == ["barcode", "leiden", "cell_type"]
    assert len(df) == adata.n_obs


def test_read_cluster_labels_csv_and_tsv(tmp_path):
    csv = tmp_path / "labels.csv"
    csv.write_text("cluster,label\n0, T cells\n1,B cells\n")
    assert io_utils.read_cluster_labels(csv) == {"0": "T cells", "1": "B cells"}

    tsv = tmp_path / "labels.tsv"
    tsv.write_text("cluster\tlabel\n2\tNK cells\n")
    assert io_utils.read_cluster_labels(tsv) == {"2": "NK cells"}


def test_read_cluster_labels_validation(tmp_path):
    missing_col = tmp_path / "a.csv"
    missing_col.write_text("cluster,name\n0,T\n")
    with pytest.raises(KeyError):
        io_utils.read_cluster_labels(missing_col)

    dup = tmp_path / "b.csv"
    dup.write_text("cluster,label\n0,T\n0,B\n")
    with pytest.raises(ValueError):
        io_utils.read_cluster_labels(dup)

    with pytest.raises(FileNotFoundError):
        io_utils.read_cluster_labels(tmp_path / "none.csv")
