from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Literal, Optional

from matplotlib.figure import Figure
from pydantic import BaseModel, Field, field_validator, model_validator


# Seurat-style DoubletFinder sweep grids
DEFAULT_SWEEP_PN = [0.05, 0.10, 0.15, 0.20, 0.25, 0.30]
DEFAULT_SWEEP_PK = [0.0005, 0.001, 0.005] + [round(0.01 * i, 2) for i in range(1, 31)]


class _StageConfig(BaseModel):
    """Figure + logging options shared by every stage."""

    make_figures: bool = True
    figdir_name: str = "figures"
    figure_formats: List[str] = Field(default_factory=lambda: ["png", "pdf"])

    checkpoint_format: Literal["h5ad", "zarr"] = "h5ad"

    logfile: Optional[Path] = None

    @field_validator("figure_formats")
    @classmethod
    def validate_formats(cls, formats: List[str]) -> List[str]:
        supported = Figure().canvas.get_supported_filetypes()
        out = []
        for fmt in formats:
            fmt = fmt.lower()
            if fmt not in supported:
                raise ValueError(
                    f"Unsupported figure format '{fmt}'. "
                    f"Supported formats include: {', '.join(sorted(supported))}"
                )
            out.append(fmt)
        return out


# ---------------------------------------------------------------------
# LOAD AND QC
# ---------------------------------------------------------------------
class LoadAndQCConfig(_StageConfig):

    # ---- Input ----
    matrix_dir: Path
    var_names: Literal["gene_symbols", "gene_ids"] = "gene_symbols"
    sample_id: Optional[str] = None
    metadata_tsv: Optional[Path] = None
    batch_key: str = "library_id"

    # ---- Output ----
    output_dir: Path
    output_name: str = "adata.qc"

    # ---- QC ----
    min_genes: int = Field(200, ge=0)
    max_genes: Optional[int] = None
    min_cells: int = Field(3, ge=0)
    max_pct_mt: float = Field(10.0, gt=0.0, le=100.0)

    mt_prefix: str = "MT-"
    ribo_prefixes: List[str] = Field(default_factory=lambda: ["RPL", "RPS"])
    hb_regex: str = r"^HB[AB]"

    @property
    def figdir(self) -> Path:
        return self.output_dir / self.figdir_name

    @model_validator(mode="after")
    def check_gene_bounds(self):
        if self.max_genes is not None and self.max_genes <= self.min_genes:
            raise ValueError("max_genes must be > min_genes")
        return self


# ---------------------------------------------------------------------
# DOUBLET DETECTION (pN / pK)
# ---------------------------------------------------------------------
class DoubletConfig(_StageConfig):

    # ---- I/O ----
    input_path: Path
    output_dir: Optional[Path] = None
    output_name: str = "adata.singlets"

    # ---- Preprocessing ----
    n_top_genes: int = Field(2000, ge=1)
    n_comps: int = Field(50, ge=2)
    n_pcs: int = Field(30, ge=2)
    n_neighbors: int = Field(20, ge=2)
    resolution: float = Field(0.5, gt=0.0)
    cluster_method: Literal["leiden", "louvain"] = "leiden"
    cluster_key: Optional[str] = Field(None, description="obs column for clusters (default: cluster_method)")

    # ---- Artificial doublets ----
    pn: float = 0.25
    pk: Optional[float] = 0.22
    run_pk_sweep: bool = True
    sweep_pn_values: List[float] = Field(default_factory=lambda: list(DEFAULT_SWEEP_PN))
    sweep_pk_values: List[float] = Field(default_factory=lambda: list(DEFAULT_SWEEP_PK))
    sweep_max_cells: int = Field(10_000, ge=10)

    # ---- Expected doublets ----
    doublet_rate: float = 0.01
    adjust_homotypic: bool = True
    homotypic_key: Optional[str] = Field(
        None,
        description="obs column used to model homotypic doublets (default: cluster_key)",
    )
    remove_doublets: bool = True

    # ---- Compute ----
    n_jobs: int = 1
    random_state: int = 0

    @property
    def figdir(self) -> Path:
        return self.output_dir / self.figdir_name

    @model_validator(mode="after")
    def resolve_defaults(self):
        if self.output_dir is None:
            self.output_dir = self.input_path.parent
        if self.cluster_key is None:
            self.cluster_key = self.cluster_method
        return self

    @model_validator(mode="after")
    def check_doublet_params(self):
        if not (0 < self.pn < 1):
            raise ValueError("pn must be in (0, 1)")
        if self.pk is not None and not (0 < self.pk < 1):
            raise ValueError("pk must be in (0, 1)")
        if self.pk is None and not self.run_pk_sweep:
            raise ValueError("pk must be set when the pK sweep is disabled")
        if not (0 < self.doublet_rate < 0.5):
            raise ValueError("doublet_rate must be in (0, 0.5)")
        if any(not (0 < v < 1) for v in self.sweep_pn_values + self.sweep_pk_values):
            raise ValueError("sweep pN/pK values must lie in (0, 1)")
        if self.n_pcs > self.n_comps:
            raise ValueError("n_pcs cannot exceed n_comps")
        return self


# ---------------------------------------------------------------------
# RESUBSET, CLUSTER AND ANNOTATE
# ---------------------------------------------------------------------
class ClusterAnnotateConfig(_StageConfig):

    # ---- I/O ----
    input_path: Path
    output_dir: Optional[Path] = None
    output_name: str = "adata.resubset"
    markers_dirname: str = "markers"

    # ---- Resubset ----
    subset_key: str = "leiden"
    keep_clusters: Optional[List[str]] = None
    drop_clusters: Optional[List[str]] = None

    # ---- Normalization / scaling ----
    n_top_genes: int = Field(2000, ge=1)
    batch_key: Optional[str] = None
    regress_cell_cycle: bool = True
    cell_cycle_mode: Literal["full", "difference"] = "full"
    regress_covariates: List[str] = Field(default_factory=list)
    scale_max_value: float = Field(10.0, gt=0.0)

    # ---- Embedding / clustering ----
    n_comps: int = Field(50, ge=2)
    n_pcs: int = Field(30, ge=2)
    n_neighbors: int = Field(20, ge=2)
    resolution: float = Field(0.5, gt=0.0)
    cluster_method: Literal["leiden", "louvain"] = "leiden"
    label_key: str = "leiden"
    random_state: int = 0

    # ---- Markers ----
    run_markers: bool = True
    marker_method: Literal["wilcoxon", "t-test", "t-test_overestim_var", "logreg"] = "wilcoxon"
    marker_min_pct: float = Field(0.25, ge=0.0, le=1.0)
    marker_logfc_threshold: float = Field(0.25, ge=0.0)
    marker_positive_only: bool = True
    marker_top_n: int = Field(5, ge=1)

    # ---- Annotation ----
    annotation_csv: Optional[Path] = None
    cluster_labels: Dict[str, str] = Field(default_factory=dict)
    annotation_key: str = "cell_type"

    @property
    def figdir(self) -> Path:
        return self.output_dir / self.figdir_name

    @property
    def markers_dir(self) -> Path:
        return self.output_dir / self.markers_dirname

    @model_validator(mode="after")
    def resolve_output_dir(self):
        if self.output_dir is None:
            self.output_dir = self.input_path.parent
        return self

    @model_validator(mode="after")
    def check_subset(self):
        if self.keep_clusters and self.drop_clusters:
            raise ValueError("keep_clusters and drop_clusters are mutually exclusive")
        if self.n_pcs > self.n_comps:
            raise ValueError("n_pcs cannot exceed n_comps")
        return self


# ---------------------------------------------------------------------
# STANDALONE ANNOTATION
# ---------------------------------------------------------------------
class AnnotateConfig(_StageConfig):

    input_path: Path
    output_path: Optional[Path] = None
    cluster_key: str = "leiden"
    annotation_key: str = "cell_type"
    annotation_csv: Optional[Path] = None
    cluster_labels: Dict[str, str] = Field(default_factory=dict)
    export_csv: Optional[Path] = None

    @property
    def figdir(self) -> Path:
        return self.output_path.parent / self.figdir_name

    @model_validator(mode="after")
    def resolve_outputs(self):
        if self.output_path is None:
            self.output_path = self.input_path.with_name(f"adata.annotated.{self.checkpoint_format}")
        elif self.output_path.suffix != f".{self.checkpoint_format}":
            raise ValueError(
                f"output_path suffix '{self.output_path.suffix}' does not match "
                f"checkpoint_format '{self.checkpoint_format}'"
            )
        if self.export_csv is None:
            self.export_csv = self.output_path.parent / "cluster_annotations.csv"
        if self.annotation_csv is None and not self.cluster_labels:
            raise ValueError("Provide annotation_csv or at least one cluster label")
        return self
