#!/usr/bin/env python3
"""
Sampling-artifact scRNA-seq analysis, step by step

This script performs:
1. Loading of hashed 10x libraries and hashtag demultiplexing
2. Quality control, doublet detection and normalization
3. PCA, UMAP, clustering and cell type annotation
4. Downstream comparison of sampling conditions (kBET, DE, artifact signature)

Each step reads the .h5ad written by the previous one from --output-dir.

python artifact_pipeline.py --step all --data-dir data/ --libraries L1 L2 --sample-sheet samples.csv
"""

import warnings
import argparse
import matplotlib
import scanpy as sc
from pathlib import Path

from scartifacts.config import (
    CELL_FILTERS,
    GENE_FILTERS,
    DOUBLET_PARAMS,
    CLUSTER_PARAMS,
    REFERENCE_LEVELS,
    get_config_summary,
)
from scartifacts.data_loader import load_and_merge_libraries, load_sample_sheet, add_metadata
from scartifacts.demultiplex import (
    hto_demux,
    summarize_demultiplexing,
    keep_singlets,
    plot_hto_demultiplexing,
)
from scartifacts.qc import (
    calculate_qc_metrics,
    plot_qc_metrics,
    plot_qc_by_condition,
    summarize_qc_by_condition,
    detect_doublets,
    filter_cells_and_genes,
    filtering_report,
)
from scartifacts.processing import (
    normalize_and_scale,
    run_pca,
    run_pca_umap_clustering,
    choose_resolution,
    plot_embeddings,
)
from scartifacts.annotation import (
    assign_celltypes_by_cluster_scores,
    create_cluster_aggregated_labels,
    celltype_composition,
    plot_marker_genes,
    plot_cell_type_summary,
    plot_celltype_composition,
)
from scartifacts.batch_effects import kbet_by_condition, plot_kbet
from scartifacts.differential_expression import (
    create_condition_column,
    create_pseudobulk,
    run_de_all_celltypes,
    run_cell_level_de,
    count_degs,
    plot_de_summary,
    plot_deg_counts,
)
from scartifacts.signatures import (
    derive_signature,
    score_signature,
    flag_affected_cells,
    plot_signature_scores,
)

STEPS = ["demultiplex", "qc", "cluster", "downstream"]
DE_METHODS = ["deseq2", "ttest", "wilcoxon"]

DEMULTIPLEXED_FILE = "demultiplexed.h5ad"
QC_FILE = "qc_normalized.h5ad"
ANNOTATED_FILE = "annotated.h5ad"


def _read_step_input(output_dir, file_name):
    path = Path(output_dir) / file_name
    if not path.exists():
        raise FileNotFoundError(f"Missing input {path}; run the previous step first")
    print(f"Loading {path}")
    return sc.read_h5ad(path)


def _condition_levels(adata, condition):
    column = adata.obs[condition]
    if hasattr(column, "cat"):
        return [str(lv) for lv in column.cat.categories]
    return [str(lv) for lv in column.dropna().unique()]


def run_demultiplex_step(data_dir, libraries, output_dir, plots_dir, sample_sheet=None):
    """Load libraries, demultiplex hashtags, keep singlets and attach metadata"""
    print("\n=== Step 1: demultiplexing ===")

    plots_dir = Path(plots_dir)
    adata = load_and_merge_libraries(data_dir, libraries)
    adata = hto_demux(adata)

    summary = summarize_demultiplexing(adata)
    summary_path = Path(output_dir) / "demultiplexing_summary.csv"
    summary.to_csv(summary_path)
    print(f"  Saved: {summary_path}")

    plot_hto_demultiplexing(adata, save_dir=plots_dir)
    adata = keep_singlets(adata)

    if sample_sheet is not None:
        if not Path(sample_sheet).exists():
            raise FileNotFoundError(f"Sample sheet not found: {sample_sheet}")
        adata = add_metadata(adata, load_sample_sheet(sample_sheet))

    output_path = Path(output_dir) / DEMULTIPLEXED_FILE
    adata.write(output_path)
    print(f"Saved demultiplexed data to {output_path}")
    return adata


def run_qc_step(output_dir, plots_dir, condition="time"):
    """QC metrics, doublet removal, filtering and normalization"""
    print("\n=== Step 2: QC and normalization ===")

    plots_dir = Path(plots_dir)
    adata = _read_step_input(output_dir, DEMULTIPLEXED_FILE)
    adata = calculate_qc_metrics(adata)
    plot_qc_metrics(adata, save_dir=plots_dir)

    if condition in adata.obs:
        downstream_dir = Path(output_dir) / "downstream"
        downstream_dir.mkdir(parents=True, exist_ok=True)
        plot_qc_by_condition(adata, condition=condition, save_dir=plots_dir)
        qc_summary = summarize_qc_by_condition(adata, condition=condition)
        qc_summary.to_csv(downstream_dir / "qc_by_condition.csv")
        print(f"  Saved: {downstream_dir}/qc_by_condition.csv")

    adata = detect_doublets(
        adata,
        expected_doublet_rate=DOUBLET_PARAMS["expected_doublet_rate"],
        min_cells_per_library=DOUBLET_PARAMS["min_cells_per_library"],
        save_dir=plots_dir,
    )

    adata_filtered = filter_cells_and_genes(
        adata,
        min_genes=CELL_FILTERS["min_genes"],
        max_genes=CELL_FILTERS["max_genes"],
        max_mt_pct=CELL_FILTERS["max_mt_pct"],
        min_counts=CELL_FILTERS["min_counts"],
        max_counts=CELL_FILTERS["max_counts"],
        max_ribo_pct=CELL_FILTERS["max_ribo_pct"],
        min_cells=GENE_FILTERS["min_cells"],
    )
    report = filtering_report(adata, adata_filtered)
    report.to_csv(Path(output_dir) / "filtering_report.csv")
    print(f"  Saved: {output_dir}/filtering_report.csv")

    adata = normalize_and_scale(adata_filtered)

    output_path = Path(output_dir) / QC_FILE
    adata.write(output_path)
    print(f"Saved normalized data to {output_path}")
    return adata


def run_cluster_step(
    output_dir,
    plots_dir,
    method=CLUSTER_PARAMS["method"],
    resolution=CLUSTER_PARAMS["resolution"],
    sweep=False,
):
    """Embedding, clustering and marker-based cell type annotation"""
    print("\n=== Step 3: clustering and annotation ===")

    plots_dir = Path(plots_dir)
    adata = _read_step_input(output_dir, QC_FILE)
    adata = run_pca(adata)
    adata = run_pca_umap_clustering(adata, resolution=resolution, method=method, save_dir=plots_dir)

    if sweep:
        choose_resolution(adata, method=method, save_dir=plots_dir)

    adata = assign_celltypes_by_cluster_scores(adata, cluster_key=method)
    create_cluster_aggregated_labels(adata, cluster_col=method)

    plot_embeddings(adata, color=(method, "celltype", "time", "temperature", "culture", "donor"), save_dir=plots_dir)
    plot_marker_genes(adata, groupby=method, save_dir=plots_dir)
    plot_cell_type_summary(adata, save_dir=plots_dir)

    output_path = Path(output_dir) / ANNOTATED_FILE
    adata.write(output_path)
    print(f"Saved annotated data to {output_path}")
    return adata


def run_downstream_step(output_dir, plots_dir, condition="time", reference=None, de_method="deseq2"):
    """Composition, kBET, differential expression and artifact signature per condition"""
    print(f"\n=== Step 4: downstream analysis ({condition}) ===")

    if de_method not in DE_METHODS:
        raise ValueError(f"Unknown DE method: {de_method}. Use one of {DE_METHODS}")

    plots_dir = Path(plots_dir)
    adata = _read_step_input(output_dir, ANNOTATED_FILE)
    if condition not in adata.obs:
        raise ValueError(f"Missing required columns: ['{condition}']")
    reference = reference or REFERENCE_LEVELS[condition]

    downstream_dir = Path(output_dir) / "downstream"
    downstream_dir.mkdir(parents=True, exist_ok=True)

    levels = _condition_levels(adata, condition)

    # Cell type composition
    composition = celltype_composition(adata, condition=condition)
    composition.to_csv(downstream_dir / "celltype_composition.csv", index=False)
    plot_celltype_composition(composition, condition=condition, save_dir=plots_dir)

    # Mixing of each level with the reference
    kbet_results = kbet_by_condition(adata, condition=condition, reference=reference)
    kbet_results.to_csv(downstream_dir / "kbet_results.csv", index=False)
    print(f"  Saved: {downstream_dir}/kbet_results.csv")
    plot_kbet(kbet_results, level_order=levels, save_dir=plots_dir)

    # Differential expression against the reference
    adata = create_condition_column(adata, condition=condition, levels=levels)
    if de_method == "wilcoxon":
        de_results = run_cell_level_de(adata, condition="condition", reference=reference)
    else:
        pb_df, sample_info_df = create_pseudobulk(adata)
        de_results = run_de_all_celltypes(
            pb_df,
            sample_info_df,
            reference=reference,
            levels=levels,
            use_deseq2=(de_method == "deseq2"),
        )
    de_results.to_csv(downstream_dir / "de_results.csv", index=False)
    print(f"  Saved: {downstream_dir}/de_results.csv")

    deg_counts = count_degs(de_results)
    deg_counts.to_csv(downstream_dir / "deg_counts.csv", index=False)
    print(f"  Saved: {downstream_dir}/deg_counts.csv")

    if not deg_counts.empty:
        contrast_order = [f"{lv}_vs_{reference}" for lv in levels if lv != reference]
        plot_de_summary(deg_counts, save_path=plots_dir / f"deg_heatmap_{condition}.png")
        plot_deg_counts(deg_counts, contrast_order=contrast_order, save_path=plots_dir / f"deg_counts_{condition}.png")

    # Artifact signature from the most extreme level
    tested = [lv for lv in levels if lv != reference]
    genes = []
    if tested and not de_results.empty:
        genes = derive_signature(de_results, contrast=f"{tested[-1]}_vs_{reference}", direction="up")
    if genes:
        score_col = score_signature(adata, genes, name=f"{condition}_artifact")
        affected = flag_affected_cells(adata, score_col, condition=condition, reference=reference)
        affected.to_csv(downstream_dir / "affected_fraction.csv")
        print(f"  Saved: {downstream_dir}/affected_fraction.csv")
        plot_signature_scores(adata, score_col, condition=condition, save_dir=plots_dir)
    else:
        print("No significant up-regulated genes, skipping signature scoring")

    return de_results


def build_parser():
    parser = argparse.ArgumentParser(
        description="scRNA-seq analysis of sampling artifacts (time, temperature, culture)"
    )
    parser.add_argument("--step", choices=STEPS + ["all"], default="all", help="Step to run (default: all)")
    parser.add_argument("--data-dir", help="Directory holding the 10x libraries")
    parser.add_argument("--libraries", nargs="+", help="Library names under --data-dir")
    parser.add_argument("--sample-sheet", help="CSV/TSV/XLSX linking library and hashtag to donor and condition")
    parser.add_argument("--output-dir", default="results", help="Directory for .h5ad files and tables (default: 'results')")
    parser.add_argument("--plots-dir", default="plots", help="Directory to write plots to (default: 'plots')")
    parser.add_argument("--condition", choices=["time", "temperature", "culture"], default="time", help="Sampling condition to compare")
    parser.add_argument("--reference", help="Reference level (default: 0h for time, 4C for temperature, uncultured for culture)")
    parser.add_argument("--de-method", choices=DE_METHODS, default="deseq2", help="Differential expression method")
    parser.add_argument("--cluster-method", choices=["louvain", "leiden"], default=CLUSTER_PARAMS["method"])
    parser.add_argument("--resolution", type=float, default=CLUSTER_PARAMS["resolution"])
    parser.add_argument("--sweep-resolution", action="store_true", help="Pick the resolution by silhouette sweep")
    return parser


def main(argv=None):
    """Main analysis pipeline"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.step in ("demultiplex", "all") and not (args.data_dir and args.libraries):
        parser.error("--data-dir and --libraries are required for the demultiplex step")

    # Configure scanpy
    sc.settings.verbosity = 1
    sc.settings.set_figure_params(dpi=80, facecolor="white")
    warnings.filterwarnings("ignore")

    # Save-only mode
    matplotlib.use("Agg")

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    plots_dir = Path(args.plots_dir)
    plots_dir.mkdir(parents=True, exist_ok=True)
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    print("\n" + get_config_summary() + "\n")

    steps = STEPS if args.step == "all" else [args.step]
    result = None
    for step in steps:
        if step == "demultiplex":
            result = run_demultiplex_step(
                args.data_dir, args.libraries, output_dir, plots_dir, sample_sheet=args.sample_sheet
            )
        elif step == "qc":
            result = run_qc_step(output_dir, plots_dir, condition=args.condition)
        elif step == "cluster":
            result = run_cluster_step(
                output_dir,
                plots_dir,
                method=args.cluster_method,
                resolution=args.resolution,
                sweep=args.sweep_resolution,
            )
        else:
            result = run_downstream_step(
                output_dir,
                plots_dir,
                condition=args.condition,
                reference=args.reference,
                de_method=args.de_method,
            )

    print("Analysis complete!")
    return result


if __name__ == "__main__":
    main()
