from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from kneed import KneeLocator

LOGGER = logging.getLogger(__name__)


# Tirosh et al. 2016 cell-cycle genes (2019 symbol update)
S_GENES = [
    "MCM5", "PCNA", "TYMS", "FEN1", "MCM7", "MCM4", "RRM1", "UNG", "GINS2",
    "MCM6", "CDCA7", "DTL", "PRIM1", "UHRF1", "CENPU", "HELLS", "RFC2",
    "POLR1B", "NASP", "RAD51AP1", "GMNN", "WDR76", "SLBP", "CCNE2", "UBR7",
    "POLD3", "MSH2", "ATAD2", "RAD51", "RRM2", "CDC45", "CDC6", "EXO1",
    "TIPIN", "DSCC1", "BLM", "CASP8AP2", "USP1", "CLSPN", "POLA1", "CHAF1B",
    "MRPL36", "E2F8",
]
G2M_GENES = [
    "HMGB2", "CDK1", "NUSAP1", "UBE2C", "BIRC5", "TPX2", "TOP2A", "NDC80",
    "CKS2", "NUF2", "CKS1B", "MKI67", "TMPO", "CENPF", "TACC3", "PIMREG",
    "SMC4", "CCNB2", "CKAP2L", "CKAP2", "AURKB", "BUB1", "KIF11", "ANP32E",
    "TUBB4B", "GTSE1", "KIF20B", "HJURP", "CDCA3", "JPT1", "CDC20", "TTK",
    "CDC25C", "KIF2C", "RANGAP1", "NCAPD2", "DLGAP5", "CDCA2", "CDCA8",
    "ECT2", "KIF23", "HMMR", "AURKA", "PSRC1", "ANLN", "LBR", "CKAP5",
    "CENPE", "CTCF", "NEK2", "G2E3", "GAS2L3", "CBX5", "CENPA",
]

MIN_CELL_CYCLE_GENES = 5


# ---------------------------------------------------------------------
# Normalization + HVG
# ---------------------------------------------------------------------
def normalize_and_hvg(
    adata: ad.AnnData,
    n_top_genes: int = 2000,
    target_sum: float = 1e4,
    batch_key: Optional[str] = None,
) -> ad.AnnData:
    """
    Library-size normalize and log1p from ``layers['counts']``, then flag
    highly variable genes.

    X is always rebuilt from the raw counts, so the function can be rerun on
    a subset without compounding transforms.
    """
    if "counts" not in adata.layers:
        LOGGER.warning("layers['counts'] missing; treating current X as raw counts.")
        adata.layers["counts"] = adata.X.copy()

    adata.X = adata.layers["counts"].copy()
    adata.uns.pop("log1p", None)

    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    adata.layers["lognorm"] = adata.X.copy()

    if batch_key is not None and (batch_key not in adata.obs or adata.obs[batch_key].nunique() < 2):
        LOGGER.info("batch_key '%s' absent or single-valued; selecting HVGs without batches.", batch_key)
        batch_key = None

    sc.pp.highly_variable_genes(
        adata,
        n_top_genes=min(n_top_genes, adata.n_vars),
        flavor="seurat",
        batch_key=batch_key,
    )
    LOGGER.info("Selected %d highly variable genes", int(adata.var["highly_variable"].sum()))
    return adata


# ---------------------------------------------------------------------
# Cell cycle
# ---------------------------------------------------------------------
def _match_genes(genes: Sequence[str], var_names: pd.Index) -> List[str]:
    lookup = {str(v).upper(): str(v) for v in var_names}
    return [lookup[g.upper()] for g in genes if g.upper() in lookup]


def score_cell_cycle(
    adata: ad.AnnData,
    s_genes: Optional[Sequence[str]] = None,
    g2m_genes: Optional[Sequence[str]] = None,
    mode: str = "full",
    random_state: int = 0,
) -> List[str]:
    """
    Score S and G2/M phases on log-normalized data and return the covariates
    to regress for ``mode``:

    - "full": S_score and G2M_score (removes all cell-cycle signal)
    - "difference": S_score - G2M_score (keeps cycling vs non-cycling)
    """
    if mode not in ("full", "difference"):
        raise ValueError(f"Unknown cell-cycle mode '{mode}' (expected 'full' or 'difference')")

    s_found = _match_genes(s_genes or S_GENES, adata.var_names)
    g2m_found = _match_genes(g2m_genes or G2M_GENES, adata.var_names)

    if len(s_found) < MIN_CELL_CYCLE_GENES or len(g2m_found) < MIN_CELL_CYCLE_GENES:
        LOGGER.warning(
            "Too few cell-cycle genes found (S=%d, G2M=%d); skipping cell-cycle scoring.",
            len(s_found),
            len(g2m_found),
        )
        return []

    sc.tl.score_genes_cell_cycle(
        adata,
        s_genes=s_found,
        g2m_genes=g2m_found,
        layer="lognorm" if "lognorm" in adata.layers else None,
        use_raw=False,
        random_state=random_state,
    )
    adata.obs["cc_difference"] = adata.obs["S_score"] - adata.obs["G2M_score"]

    LOGGER.info(
        "Cell-cycle phases (S=%d genes, G2M=%d genes): %s",
        len(s_found),
        len(g2m_found),
        adata.obs["phase"].value_counts().to_dict(),
    )

    return ["S_score", "G2M_score"] if mode == "full" else ["cc_difference"]


# ---------------------------------------------------------------------
# Regression, scaling, PCA
# ---------------------------------------------------------------------
def _design_columns(adata: ad.AnnData, regress_vars: Sequence[str]) -> List[str]:
    """Add numeric design columns to obs; categoricals become 0/1 dummies."""
    keys = []
    for var in regress_vars:
        col = adata.obs[var]
        if pd.api.types.is_numeric_dtype(col) and not isinstance(col.dtype, pd.CategoricalDtype):
            keys.append(var)
            continue

        dummies = pd.get_dummies(col.astype(str), prefix=f"_regress_{var}", drop_first=True, dtype=float)
        if dummies.shape[1] == 0:
            LOGGER.warning("Covariate '%s' has a single level; not regressed.", var)
            continue
        for c in dummies.columns:
            adata.obs[c] = dummies[c].to_numpy()
        keys.extend(dummies.columns)
    return keys


def scale_and_pca(
    adata: ad.AnnData,
    regress_vars: Optional[Sequence[str]] = None,
    n_comps: int = 50,
    max_value: float = 10.0,
    random_state: int = 0,
) -> ad.AnnData:
    """
    Regress covariates out of the HVG matrix, scale it and run PCA.

    ``adata.X`` keeps the log-normalized values of every gene; only the
    PCA outputs are copied back.
    """
    regress_vars = list(regress_vars or [])
    missing = [v for v in regress_vars if v not in adata.obs]
    if missing:
        raise KeyError(f"Covariates not found in adata.obs: {missing}")

    if "highly_variable" not in adata.var:
        raise KeyError("adata.var['highly_variable'] missing; run normalize_and_hvg() first.")

    hvg_mask = adata.var["highly_variable"].to_numpy()
    sub = adata[:, hvg_mask].copy()

    if regress_vars:
        keys = _design_columns(sub, regress_vars)
        if keys:
            LOGGER.info("Regressing out %s on %d HVGs", regress_vars, sub.n_vars)
            sc.pp.regress_out(sub, keys)

    sc.pp.scale(sub, max_value=max_value)

    n_comps = min(n_comps, min(sub.n_obs, sub.n_vars) - 1)
    sc.tl.pca(sub, n_comps=n_comps, svd_solver="arpack", random_state=random_state)

    adata.obsm["X_pca"] = sub.obsm["X_pca"]
    adata.uns["pca"] = sub.uns["pca"]
    pcs = np.zeros((adata.n_vars, n_comps), dtype=sub.varm["PCs"].dtype)
    pcs[hvg_mask] = sub.varm["PCs"]
    adata.varm["PCs"] = pcs

    adata.uns["regressed_covariates"] = regress_vars
    LOGGER.info("PCA: %d components on %d HVGs", n_comps, sub.n_vars)
    return adata


# ---------------------------------------------------------------------
# Neighbors + UMAP
# ---------------------------------------------------------------------
def neighbors_and_umap(
    adata: ad.AnnData,
    n_pcs: int = 30,
    n_neighbors: int = 20,
    random_state: int = 0,
) -> ad.AnnData:
    pvar = np.asarray(adata.uns["pca"]["variance_ratio"])
    n_pcs = min(n_pcs, adata.obsm["X_pca"].shape[1])

    kl = KneeLocator(range(1, len(pvar) + 1), pvar, curve="convex", direction="decreasing")
    adata.uns["n_pcs_elbow"] = int(kl.elbow) if kl.elbow is not None else int(n_pcs)
    LOGGER.info("PCA elbow at %d PCs; using %d PCs", adata.uns["n_pcs_elbow"], n_pcs)

    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        n_pcs=n_pcs,
        use_rep="X_pca",
        random_state=random_state,
    )
    sc.tl.umap(adata, random_state=random_state)
    return adata


# ---------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------
def cluster_cells(
    adata: ad.AnnData,
    resolution: float = 0.5,
    method: str = "leiden",
    key_added: str = "leiden",
    random_state: int = 0,
) -> ad.AnnData:
    if method == "leiden":
        sc.tl.leiden(
            adata,
            resolution=float(resolution),
            key_added=key_added,
            random_state=random_state,
            flavor="igraph",
            n_iterations=2,
            directed=False,
        )
    elif method == "louvain":
        sc.tl.louvain(
            adata,
            resolution=float(resolution),
            key_added=key_added,
            random_state=random_state,
        )
    else:
        raise ValueError(f"Unknown clustering method '{method}' (expected 'leiden' or 'louvain')")

    n_clusters = adata.obs[key_added].nunique()
    adata.uns["clustering"] = {
        "method": method,
        "resolution": float(resolution),
        "key": key_added,
        "n_clusters": int(n_clusters),
    }
    LOGGER.info("%s at resolution %.2f: %d clusters -> obs['%s']", method.capitalize(), resolution, n_clusters, key_added)
    return adata
