from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from joblib import Parallel, delayed
from scipy import sparse
from scipy.stats import gaussian_kde, kurtosis, skew
from sklearn.neighbors import NearestNeighbors

LOGGER = logging.getLogger(__name__)

SweepResult = Dict[Tuple[float, float], np.ndarray]


# ---------------------------------------------------------------------
# Artificial doublets
# ---------------------------------------------------------------------
def n_artificial_doublets(n_real: int, pn: float) -> int:
    """Number of artificial doublets so that they make up ``pn`` of the merged set."""
    if not (0 < pn < 1):
        raise ValueError(f"pn must be in (0, 1), got {pn}")
    return int(round(n_real / (1 - pn) - n_real))


def simulate_artificial_doublets(
    counts,
    n_doublets: int,
    rng: np.random.Generator,
) -> sparse.csr_matrix:
    """
    Average the raw count profiles of ``n_doublets`` random cell pairs.
    Cells are drawn with replacement; ``counts`` is cells x genes.
    """
    counts = sparse.csr_matrix(counts)
    n_cells = counts.shape[0]
    first = rng.integers(0, n_cells, size=n_doublets)
    second = rng.integers(0, n_cells, size=n_doublets)
    return sparse.csr_matrix((counts[first] + counts[second]) * 0.5)


def _merged_pca(
    counts,
    n_doublets: int,
    rng: np.random.Generator,
    *,
    n_top_genes: int,
    n_pcs: int,
    random_state: int,
) -> np.ndarray:
    """PCA of real + artificial cells; real cells occupy the first rows."""
    real = sparse.csr_matrix(counts, dtype=np.float32)
    doublets = simulate_artificial_doublets(real, n_doublets, rng)
    merged = sparse.vstack([real, doublets]).tocsr()

    detected = np.diff(merged.tocsc().indptr) > 0
    tmp = ad.AnnData(merged[:, detected])

    sc.pp.normalize_total(tmp, target_sum=1e4)
    sc.pp.log1p(tmp)
    sc.pp.highly_variable_genes(
        tmp,
        n_top_genes=min(n_top_genes, tmp.n_vars),
        flavor="seurat",
        subset=True,
    )
    sc.pp.scale(tmp, max_value=10)

    n_comps = min(n_pcs, min(tmp.shape) - 1)
    sc.tl.pca(tmp, n_comps=n_comps, svd_solver="arpack", random_state=random_state)
    return tmp.obsm["X_pca"]


def artificial_neighbor_proportions(
    counts,
    pn: float,
    pk_values: Sequence[float],
    *,
    n_top_genes: int = 2000,
    n_pcs: int = 30,
    random_state: int = 0,
) -> Dict[float, np.ndarray]:
    """
    pANN of every real cell for each pK: the fraction of its
    ``round(n_merged * pK)`` nearest neighbors (self excluded) that are
    artificial doublets. pK values giving fewer than one neighbor are dropped.
    """
    rng = np.random.default_rng(random_state)
    n_real = counts.shape[0]
    n_dbl = n_artificial_doublets(n_real, pn)
    n_merged = n_real + n_dbl

    ks = {float(pk): int(round(n_merged * pk)) for pk in pk_values}
    valid = {pk: k for pk, k in ks.items() if k >= 1}
    if len(valid) < len(ks):
        LOGGER.debug("Dropped pK values with k < 1: %s", sorted(set(ks) - set(valid)))
    if not valid:
        raise ValueError(f"No pK value yields at least one neighbor for {n_merged} merged cells.")

    pcs = _merged_pca(
        counts,
        n_dbl,
        rng,
        n_top_genes=n_top_genes,
        n_pcs=n_pcs,
        random_state=random_state,
    )

    k_max = min(max(valid.values()), n_merged - 1)
    nn = NearestNeighbors(n_neighbors=k_max + 1).fit(pcs)
    _, idx = nn.kneighbors(pcs[:n_real], n_neighbors=k_max + 1)

    # exact ties can push self out of the first slot; drop the farthest instead
    is_self = idx == np.arange(n_real)[:, None]
    is_self[~is_self.any(axis=1), -1] = True
    idx = idx[~is_self].reshape(n_real, k_max)

    n_artificial = np.cumsum(idx >= n_real, axis=1)
    out = {}
    for pk, k in valid.items():
        k = min(k, k_max)
        out[pk] = n_artificial[:, k - 1] / k
    return out


def _counts_matrix(adata: ad.AnnData, layer: Optional[str]):
    if layer is not None and layer in adata.layers:
        return adata.layers[layer]
    if layer is not None:
        LOGGER.warning("Layer '%s' not found; using adata.X as raw counts.", layer)
    return adata.X


def compute_pann(
    adata: ad.AnnData,
    *,
    pn: float,
    pk: float,
    n_top_genes: int = 2000,
    n_pcs: int = 30,
    layer: Optional[str] = "counts",
    random_state: int = 0,
) -> pd.Series:
    """pANN for all cells of ``adata`` at a single (pN, pK)."""
    counts = _counts_matrix(adata, layer)
    pann = artificial_neighbor_proportions(
        counts,
        pn,
        [pk],
        n_top_genes=n_top_genes,
        n_pcs=n_pcs,
        random_state=random_state,
    )
    return pd.Series(pann[float(pk)], index=adata.obs_names, name="pANN")


# ---------------------------------------------------------------------
# pK sweep
# ---------------------------------------------------------------------
def param_sweep(
    adata: ad.AnnData,
    pn_values: Sequence[float],
    pk_values: Sequence[float],
    *,
    max_cells: int = 10_000,
    n_top_genes: int = 2000,
    n_pcs: int = 30,
    layer: Optional[str] = "counts",
    n_jobs: int = 1,
    random_state: int = 0,
) -> SweepResult:
    """
    pANN for every (pN, pK) pair. Datasets above ``max_cells`` are
    down-sampled first; pN values run in parallel.
    """
    counts = _counts_matrix(adata, layer)
    rng = np.random.default_rng(random_state)

    n_obs = counts.shape[0]
    if n_obs > max_cells:
        sel = np.sort(rng.choice(n_obs, size=max_cells, replace=False))
        counts = sparse.csr_matrix(counts)[sel]
        LOGGER.info("pK sweep: down-sampled %d -> %d cells", n_obs, max_cells)

    # pK must give at least one neighbor in the smallest merged set
    n_real = counts.shape[0]
    n_merged_min = n_real + n_artificial_doublets(n_real, min(pn_values))
    pk_values = [float(pk) for pk in pk_values if round(pk * n_merged_min) >= 1]
    if not pk_values:
        raise ValueError("No pK value in the sweep yields at least one neighbor.")

    LOGGER.info(
        "pK sweep over %d pN x %d pK values (%d cells, n_jobs=%d)",
        len(pn_values),
        len(pk_values),
        counts.shape[0],
        n_jobs,
    )

    def _run(i, pn):
        return pn, artificial_neighbor_proportions(
            counts,
            pn,
            pk_values,
            n_top_genes=n_top_genes,
            n_pcs=n_pcs,
            random_state=random_state + i,
        )

    results = Parallel(n_jobs=n_jobs)(delayed(_run)(i, pn) for i, pn in enumerate(pn_values))

    sweep: SweepResult = {}
    for pn, by_pk in results:
        for pk, pann in by_pk.items():
            sweep[(float(pn), pk)] = pann
    return sweep


def bimodality_coefficient(x) -> float:
    """
    (g^2 + 1) / (k + 3(n-1)^2 / ((n-2)(n-3))), with sample-adjusted
    skewness g and excess kurtosis k.
    """
    x = np.asarray(x, dtype=float)
    n = x.size
    if n < 4:
        raise ValueError(f"Bimodality coefficient needs at least 4 values, got {n}")

    g = skew(x, bias=False)
    k = kurtosis(x, fisher=True, bias=False)
    return float((g ** 2 + 1) / (k + 3 * (n - 1) ** 2 / ((n - 2) * (n - 3))))


def summarize_sweep(sweep: SweepResult) -> pd.DataFrame:
    """
    Bimodality of the smoothed pANN distribution for each (pN, pK).
    The KDE is evaluated on an even grid from min to max pANN with as many
    points as cells; constant pANN gives NaN.
    """
    rows = []
    for (pn, pk), pann in sweep.items():
        pann = np.asarray(pann, dtype=float)
        bc = np.nan
        if np.ptp(pann) > 0:
            try:
                kde = gaussian_kde(pann)
            except np.linalg.LinAlgError:
                LOGGER.debug("Singular KDE at pN=%s pK=%s", pn, pk)
            else:
                grid = np.linspace(pann.min(), pann.max(), num=pann.size)
                bc = bimodality_coefficient(kde(grid))
        rows.append({"pN": pn, "pK": pk, "BCreal": bc})

    return pd.DataFrame(rows).sort_values(["pN", "pK"]).reset_index(drop=True)


def find_optimal_pk(stats: pd.DataFrame) -> Tuple[float, pd.DataFrame]:
    """
    Mean-variance normalized bimodality per pK: BCmvn = mean(BC) / var(BC)^2
    across pN. Returns the argmax pK and the per-pK table.
    """
    grouped = stats.groupby("pK", sort=True)["BCreal"]
    table = pd.DataFrame(
        {
            "MeanBC": grouped.mean(),
            "VarBC": grouped.var(ddof=1),
        }
    )
    table["BCmetric"] = table["MeanBC"] / table["VarBC"] ** 2
    table = table.reset_index()

    if table["BCmetric"].notna().sum() == 0:
        raise ValueError("BCmvn is undefined for every pK (need >= 2 pN values with non-degenerate pANN).")

    best = float(table.loc[table["BCmetric"].idxmax(), "pK"])
    return best, table


# ---------------------------------------------------------------------
# Expected doublets + classification
# ---------------------------------------------------------------------
def model_homotypic(labels) -> float:
    """Expected homotypic doublet proportion: sum of squared label frequencies."""
    freq = pd.Series(labels).value_counts(normalize=True)
    return float((freq ** 2).sum())


def expected_doublets(
    n_cells: int,
    rate: float = 0.01,
    homotypic_prop: float = 0.0,
) -> Tuple[int, int]:
    """(nExp_poi, nExp_adj): Poisson expectation and its homotypic-adjusted count."""
    if not (0 <= homotypic_prop <= 1):
        raise ValueError(f"homotypic_prop must be in [0, 1], got {homotypic_prop}")
    n_exp_poi = int(round(rate * n_cells))
    n_exp_adj = int(round(n_exp_poi * (1 - homotypic_prop)))
    return n_exp_poi, n_exp_adj


def classify_doublets(pann, n_exp: int) -> np.ndarray:
    """
    Threshold pANN at the value of the ``n_exp``-th highest cell: every cell
    at or above it is 'Doublet', the rest 'Singlet'. Cells tied at the
    cutoff share a call, so slightly more than ``n_exp`` may be called.
    """
    pann = np.asarray(pann, dtype=float)
    if n_exp < 0:
        raise ValueError(f"n_exp must be >= 0, got {n_exp}")

    calls = np.full(pann.size, "Singlet", dtype=object)
    if n_exp == 0 or pann.size == 0:
        return calls

    threshold = np.sort(pann)[::-1][min(n_exp, pann.size) - 1]
    calls[pann >= threshold] = "Doublet"
    return calls


def _log_doublet_cleanup(
    *,
    n_before: int,
    n_after: int,
    pn: float,
    pk: float,
    n_exp_poi: int,
    n_exp_adj: int,
    homotypic_prop: float,
    pk_optimal: float | None = None,
):
    removed = n_before - n_after
    frac_removed = removed / max(n_before, 1)

    lines = [
        "pN/pK doublet filtering summary:",
        f"  cells before = {n_before}",
        f"  cells after  = {n_after}",
        f"  removed      = {removed} ({frac_removed:.2%})",
        f"  pN           = {pn:g}",
        f"  pK (used)    = {pk:g}",
    ]
    if pk_optimal is not None:
        lines.append(f"  pK (BCmvn)   = {pk_optimal:g}")
    else:
        lines.append("  pK (BCmvn)   = <sweep not run>")

    lines += [
        f"  nExp (Poisson)           = {n_exp_poi}",
        f"  homotypic proportion     = {homotypic_prop:.3f}",
        f"  nExp (homotypic-adjusted) = {n_exp_adj}",
    ]
    LOGGER.info("\n".join(lines))
