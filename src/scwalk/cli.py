from __future__ import annotations
from typing import Dict, List, Optional
import typer
from pathlib import Path
import warnings

from .load_and_qc import run_load_and_qc
from .find_doublets import run_find_doublets
from .cluster_and_annotate import run_cluster_and_annotate, run_annotate

from .config import AnnotateConfig, ClusterAnnotateConfig, DoubletConfig, LoadAndQCConfig
import logging
from .logging_utils import init_logging


app = typer.Typer(help="scwalk CLI: step-by-step scRNA-seq QC, doublet removal, clustering and annotation.")

# Globally suppress noisy warnings
warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")
warnings.filterwarnings("ignore", message=".*not compatible with tight_layout.*", category=UserWarning)
warnings.filterwarnings("ignore", message=".*already log-transformed.*", category=UserWarning)
warnings.filterwarnings("ignore", message=".*Transforming to str index.*", category=UserWarning)


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _parse_labels(pairs: Optional[List[str]]) -> Dict[str, str]:
    """
    Parse repeated ``--label CLUSTER=LABEL`` options.
    Labels may contain spaces and '=' (only the first '=' splits).
    """
    labels: Dict[str, str] = {}
    for item in pairs or []:
        if "=" not in item:
            raise typer.BadParameter(f"Expected CLUSTER=LABEL, got '{item}'", param_hint="--label")
        cluster, label = item.split("=", 1)
        cluster, label = cluster.strip(), label.strip()
        if not cluster or not label:
            raise typer.BadParameter(f"Empty cluster or label in '{item}'", param_hint="--label")
        labels[cluster] = label
    return labels


def _split_ids(values: Optional[List[str]]) -> Optional[List[str]]:
    """Supports e.g. --keep 0,1 --keep 4."""
    if not values:
        return None
    out = []
    for v in values:
        out.extend([x.strip() for x in v.split(",") if x.strip()])
    return out


# ---------------------------------------------------------------------
# load-and-qc
# ---------------------------------------------------------------------
@app.command("load-and-qc", help="Load a 10x matrix, compute QC metrics and filter cells/genes.")
def load_and_qc(
    # -------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------
    matrix_dir: Path = typer.Option(
        ..., "--matrix-dir", "-i",
        help="[I/O] Directory with matrix.mtx, features.tsv (genes.tsv) and barcodes.tsv.",
    ),
    output_dir: Path = typer.Option(
        ..., "--out", "-o",
        help="[I/O] Output directory for the post-QC snapshot and figures/.",
    ),
    var_names: str = typer.Option(
        "gene_symbols", "--var-names",
        help="[I/O] gene_symbols | gene_ids",
    ),
    sample_id: Optional[str] = typer.Option(None, "--sample-id", help="[I/O] Sample label stored in obs['sample_id']."),
    metadata_tsv: Optional[Path] = typer.Option(
        None, "--metadata-tsv", "-m", exists=True,
        help="[I/O] TSV with per-library metadata, joined on --batch-key.",
    ),
    batch_key: str = typer.Option("library_id", "--batch-key", "-b", help="Library/batch column in obs."),
    checkpoint_format: str = typer.Option("h5ad", "--format", help="[I/O] h5ad | zarr"),
    # -------------------------------------------------------------
    # QC thresholds
    # -------------------------------------------------------------
    min_genes: int = typer.Option(200, help="[QC] Minimum detected genes per cell."),
    max_genes: Optional[int] = typer.Option(None, help="[QC] Maximum detected genes per cell."),
    min_cells: int = typer.Option(3, help="[QC] Minimum cells per gene."),
    max_pct_mt: float = typer.Option(10.0, help="[QC] Max mitochondrial percentage."),
    mt_prefix: str = typer.Option("MT-", help="[QC] Mitochondrial gene prefix ('mt-' for mouse)."),
    # -------------------------------------------------------------
    # Figures
    # -------------------------------------------------------------
    make_figures: bool = typer.Option(True, help="[Figures] Whether to create QC plots."),
    figure_formats: List[str] = typer.Option(
        ["png", "pdf"], "--figure-formats", "-F",
        help="[Figures] Formats to save.",
    ),
):
    logfile = output_dir / "load-and-qc.log"
    init_logging(logfile)

    cfg = LoadAndQCConfig(
        matrix_dir=matrix_dir,
        output_dir=output_dir,
        var_names=var_names,
        sample_id=sample_id,
        metadata_tsv=metadata_tsv,
        batch_key=batch_key,
        checkpoint_format=checkpoint_format,
        min_genes=min_genes,
        max_genes=max_genes,
        min_cells=min_cells,
        max_pct_mt=max_pct_mt,
        mt_prefix=mt_prefix,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    run_load_and_qc(cfg)


# ---------------------------------------------------------------------
# find-doublets
# ---------------------------------------------------------------------
@app.command("find-doublets", help="Cluster, sweep pK and remove pN/pK artificial-neighbor doublets.")
def find_doublets(
    input_path: Path = typer.Option(
        ..., "--input", "-i", exists=True,
        help="[I/O] Post-QC snapshot (.h5ad or .zarr).",
    ),
    output_dir: Optional[Path] = typer.Option(
        None, "--out", "-o",
        help="[I/O] Output directory (default: next to the input).",
    ),
    checkpoint_format: str = typer.Option("h5ad", "--format", help="[I/O] h5ad | zarr"),
    # -------------------------------------------------------------
    # Preprocessing / clustering
    # -------------------------------------------------------------
    n_top_genes: int = typer.Option(2000, help="Number of highly variable genes."),
    n_pcs: int = typer.Option(30, help="PCs used for neighbors and pANN."),
    resolution: float = typer.Option(0.5, help="Clustering resolution."),
    cluster_method: str = typer.Option("leiden", help="leiden | louvain"),
    cluster_key: Optional[str] = typer.Option(None, help="obs column for clusters (default: the method name)."),
    # -------------------------------------------------------------
    # Doublets
    # -------------------------------------------------------------
    pn: float = typer.Option(0.25, "--pn", help="[Doublets] Artificial doublet proportion."),
    pk: float = typer.Option(0.22, "--pk", help="[Doublets] Neighborhood proportion."),
    pk_from_sweep: bool = typer.Option(
        False, "--pk-from-sweep",
        help="[Doublets] Ignore --pk and use the BCmvn optimum of the sweep.",
    ),
    run_pk_sweep: bool = typer.Option(True, "--pk-sweep/--no-pk-sweep", help="[Doublets] Run the pK sweep."),
    sweep_max_cells: int = typer.Option(10_000, help="[Doublets] Down-sample the sweep to this many cells."),
    doublet_rate: float = typer.Option(0.01, help="[Doublets] Expected (Poisson) doublet rate."),
    adjust_homotypic: bool = typer.Option(True, help="[Doublets] Adjust nExp for homotypic doublets."),
    homotypic_key: Optional[str] = typer.Option(None, help="[Doublets] obs column for the homotypic model."),
    remove_doublets: bool = typer.Option(True, help="[Doublets] Drop cells called Doublet."),
    n_jobs: int = typer.Option(1, "--n-jobs", help="Number of CPU cores to use."),
    random_state: int = typer.Option(0, "--seed", help="Random seed."),
    # -------------------------------------------------------------
    # Figures
    # -------------------------------------------------------------
    make_figures: bool = typer.Option(True, help="[Figures] Whether to create plots."),
    figure_formats: List[str] = typer.Option(
        ["png", "pdf"], "--figure-formats", "-F",
        help="[Figures] Formats to save.",
    ),
):
    logfile = (output_dir or input_path.parent) / "find-doublets.log"
    init_logging(logfile)

    cfg = DoubletConfig(
        input_path=input_path,
        output_dir=output_dir,
        checkpoint_format=checkpoint_format,
        n_top_genes=n_top_genes,
        n_pcs=n_pcs,
        resolution=resolution,
        cluster_method=cluster_method,
        cluster_key=cluster_key,
        pn=pn,
        pk=None if pk_from_sweep else pk,
        run_pk_sweep=run_pk_sweep or pk_from_sweep,
        sweep_max_cells=sweep_max_cells,
        doublet_rate=doublet_rate,
        adjust_homotypic=adjust_homotypic,
        homotypic_key=homotypic_key,
        remove_doublets=remove_doublets,
        n_jobs=n_jobs,
        random_state=random_state,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    run_find_doublets(cfg)


# ---------------------------------------------------------------------
# cluster-and-annotate
# ---------------------------------------------------------------------
@app.command(
    "cluster-and-annotate",
    help="Resubset clusters, re-normalize/regress/embed/cluster, export markers and apply labels.",
)
def cluster_and_annotate(
    input_path: Path = typer.Option(
        ..., "--input", "-i", exists=True,
        help="[I/O] Singlet snapshot (.h5ad or .zarr).",
    ),
    output_dir: Optional[Path] = typer.Option(
        None, "--out", "-o",
        help="[I/O] Output directory (default: next to the input).",
    ),
    checkpoint_format: str = typer.Option("h5ad", "--format", help="[I/O] h5ad | zarr"),
    # -------------------------------------------------------------
    # Resubset
    # -------------------------------------------------------------
    subset_key: str = typer.Option("leiden", help="[Resubset] obs column holding the clusters to select."),
    keep: Optional[List[str]] = typer.Option(None, "--keep", help="[Resubset] Cluster ids to keep (comma-separated or repeated)."),
    drop: Optional[List[str]] = typer.Option(None, "--drop", help="[Resubset] Cluster ids to drop."),
    # -------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------
    n_top_genes: int = typer.Option(2000, help="Number of highly variable genes."),
    batch_key: Optional[str] = typer.Option(None, "--batch-key", "-b", help="Batch column for HVG selection."),
    regress_cell_cycle: bool = typer.Option(True, help="Regress out cell-cycle scores."),
    cell_cycle_mode: str = typer.Option("full", help="full | difference"),
    regress: Optional[List[str]] = typer.Option(None, "--regress", help="Additional obs covariates to regress out."),
    n_pcs: int = typer.Option(30, help="PCs used for neighbors."),
    resolution: float = typer.Option(0.5, help="Clustering resolution."),
    cluster_method: str = typer.Option("leiden", help="leiden | louvain"),
    label_key: str = typer.Option("leiden", help="obs column for the new clusters."),
    random_state: int = typer.Option(0, "--seed", help="Random seed."),
    # -------------------------------------------------------------
    # Markers
    # -------------------------------------------------------------
    run_markers: bool = typer.Option(True, "--markers/--no-markers", help="[Markers] Rank marker genes."),
    marker_method: str = typer.Option("wilcoxon", help="[Markers] wilcoxon | t-test | t-test_overestim_var | logreg"),
    marker_min_pct: float = typer.Option(0.25, help="[Markers] Minimum detection fraction."),
    marker_logfc_threshold: float = typer.Option(0.25, help="[Markers] Minimum log2 fold change."),
    marker_positive_only: bool = typer.Option(True, help="[Markers] Only up-regulated genes."),
    # -------------------------------------------------------------
    # Annotation
    # -------------------------------------------------------------
    annotation_csv: Optional[Path] = typer.Option(
        None, "--annotation-csv", exists=True,
        help="[Annotation] CSV/TSV with columns cluster,label.",
    ),
    label: Optional[List[str]] = typer.Option(None, "--label", help="[Annotation] CLUSTER=LABEL (repeatable)."),
    annotation_key: str = typer.Option("cell_type", help="[Annotation] obs column for labels."),
    # -------------------------------------------------------------
    # Figures
    # -------------------------------------------------------------
    make_figures: bool = typer.Option(True, help="[Figures] Whether to create plots."),
    figure_formats: List[str] = typer.Option(
        ["png", "pdf"], "--figure-formats", "-F",
        help="[Figures] Formats to save.",
    ),
):
    logfile = (output_dir or input_path.parent) / "cluster-and-annotate.log"
    init_logging(logfile)

    cfg = ClusterAnnotateConfig(
        input_path=input_path,
        output_dir=output_dir,
        checkpoint_format=checkpoint_format,
        subset_key=subset_key,
        keep_clusters=_split_ids(keep),
        drop_clusters=_split_ids(drop),
        n_top_genes=n_top_genes,
        batch_key=batch_key,
        regress_cell_cycle=regress_cell_cycle,
        cell_cycle_mode=cell_cycle_mode,
        regress_covariates=_split_ids(regress) or [],
        n_pcs=n_pcs,
        resolution=resolution,
        cluster_method=cluster_method,
        label_key=label_key,
        random_state=random_state,
        run_markers=run_markers,
        marker_method=marker_method,
        marker_min_pct=marker_min_pct,
        marker_logfc_threshold=marker_logfc_threshold,
        marker_positive_only=marker_positive_only,
        annotation_csv=annotation_csv,
        cluster_labels=_parse_labels(label),
        annotation_key=annotation_key,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    run_cluster_and_annotate(cfg)


# ---------------------------------------------------------------------
# annotate
# ---------------------------------------------------------------------
@app.command("annotate", help="Apply cluster labels to an existing snapshot.")
def annotate(
    input_path: Path = typer.Option(
        ..., "--input", "-i", exists=True,
        help="[I/O] Clustered snapshot (.h5ad or .zarr).",
    ),
    output_path: Optional[Path] = typer.Option(
        None, "--output", "-o",
        help="[I/O] Annotated snapshot (default: adata.annotated.<format> next to the input).",
    ),
    checkpoint_format: str = typer.Option("h5ad", "--format", help="[I/O] h5ad | zarr"),
    cluster_key: str = typer.Option("leiden", help="obs column with cluster ids."),
    annotation_key: str = typer.Option("cell_type", help="obs column for labels."),
    annotation_csv: Optional[Path] = typer.Option(
        None, "--annotation-csv", exists=True,
        help="CSV/TSV with columns cluster,label.",
    ),
    label: Optional[List[str]] = typer.Option(None, "--label", help="CLUSTER=LABEL (repeatable)."),
    export_csv: Optional[Path] = typer.Option(None, "--export-csv", help="Per-cell label table."),
    make_figures: bool = typer.Option(True, help="[Figures] Whether to create plots."),
    figure_formats: List[str] = typer.Option(
        ["png", "pdf"], "--figure-formats", "-F",
        help="[Figures] Formats to save.",
    ),
):
    logdir = output_path.parent if output_path is not None else input_path.parent
    logfile = logdir / "annotate.log"
    init_logging(logfile)
    logging.getLogger(__name__).info("Annotating %s", input_path)

    cfg = AnnotateConfig(
        input_path=input_path,
        output_path=output_path,
        checkpoint_format=checkpoint_format,
        cluster_key=cluster_key,
        annotation_key=annotation_key,
        annotation_csv=annotation_csv,
        cluster_labels=_parse_labels(label),
        export_csv=export_csv,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    run_annotate(cfg)


if __name__ == "__main__":
    app()
