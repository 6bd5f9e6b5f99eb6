#!/usr/bin/env python3
"""
Quality control utilities for the sampling-artifact study
Handles QC metrics, per-condition QC summaries, doublet detection and filtering
"""

import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
import seaborn as sns
import scrublet as scr

from scartifacts.config import (
    CELL_FILTERS,
    GENE_FILTERS,
    DOUBLET_PARAMS,
    GENE_PATTERNS,
)

QC_METRICS = ["n_genes_by_counts", "total_counts", "percent_mt", "percent_ribo"]


def _row_sums(X):
    return np.asarray(X.sum(axis=1)).ravel()


def calculate_qc_metrics(adata):
    """Calculate QC metrics

    Args:
        adata: AnnData object

    Returns:
        AnnData object with QC metrics added
    """
    print("Calculating QC metrics...")

    # Mitochondrial genes
    adata.var["mt"] = adata.var_names.str.startswith(GENE_PATTERNS["mt_pattern"])
    # Ribosomal genes
    adata.var["ribo"] = adata.var_names.str.match(GENE_PATTERNS["ribo_pattern"])

    sc.pp.calculate_qc_metrics(
        adata, percent_top=None, log1p=False, inplace=True, var_type="genes"
    )

    total = adata.obs["total_counts"].to_numpy(dtype=float)
    total[total == 0] = np.nan
    adata.obs["percent_mt"] = np.nan_to_num(
        _row_sums(adata[:, adata.var["mt"].values].X) / total * 100
    )
    adata.obs["percent_ribo"] = np.nan_to_num(
        _row_sums(adata[:, adata.var["ribo"].values].X) / total * 100
    )

    return adata


def plot_qc_metrics(adata, save_dir=None):
    """Plot QC metrics

    Args:
        adata: AnnData object with QC metrics
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting QC metrics...")

    fig, axes = plt.subplots(1, 4, figsize=(16, 4))
    for metric, ax in zip(QC_METRICS, axes):
        sns.violinplot(y=adata.obs[metric], ax=ax, color="skyblue", inner="box", cut=0)
        ax.set_title(metric)
        ax.set_ylabel("")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_violin_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_violin_plots.png")
        plt.close(fig)
    else:
        plt.show()

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))
    sc.pl.scatter(adata, x="total_counts", y="percent_mt", ax=axes[0], show=False)
    sc.pl.scatter(
        adata, x="total_counts", y="n_genes_by_counts", ax=axes[1], show=False
    )
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_scatter_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_scatter_plots.png")
        plt.close(fig)
    else:
        plt.show()


def summarize_qc_by_condition(adata, condition="time"):
    """Median QC metrics and cell counts per condition level

    Args:
        adata: AnnData object with QC metrics
        condition: obs column with the sampling condition

    Returns:
        DataFrame indexed by condition level
    """
    if condition not in adata.obs:
        raise ValueError(f"Missing required columns: ['{condition}']")

    summary = adata.obs.groupby(condition, observed=True).agg(
        n_cells=("total_counts", "size"),
        median_counts=("total_counts", "median"),
        median_genes=("n_genes_by_counts", "median"),
        median_pct_mt=("percent_mt", "median"),
    )
    return summary.round(2)


def plot_qc_by_condition(adata, condition="time", save_dir=None):
    """Violin plots of QC metrics split by sampling condition

    Args:
        adata: AnnData object with QC metrics
        condition: obs column with the sampling condition
        save_dir: Directory to save plots (optional)
    """
    print(f"Plotting QC metrics by {condition}...")

    metrics = [
        ("n_genes_by_counts", "Genes per cell"),
        ("total_counts", "Total counts per cell"),
        ("percent_mt", "Mitochondrial %"),
    ]
    fig, axes = plt.subplots(1, len(metrics), figsize=(5 * len(metrics), 4.5))

    for (metric, title), ax in zip(metrics, axes):
        sns.violinplot(
            data=adata.obs, x=condition, y=metric, ax=ax, inner="box", cut=0, color="skyblue"
        )
        ax.set_title(title)
        ax.set_xlabel(condition)
        ax.set_ylabel("")
        if metric == "total_counts":
            ax.set_yscale("log")

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / f"qc_by_{condition}.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_by_{condition}.png")
        plt.close(fig)
    else:
        plt.show()

    return fig


def detect_doublets(
    adata,
    sample_col="library",
    expected_doublet_rate=DOUBLET_PARAMS["expected_doublet_rate"],
    min_counts=DOUBLET_PARAMS["min_counts"],
    min_cells=DOUBLET_PARAMS["min_cells"],
    min_gene_variability_pctl=DOUBLET_PARAMS["min_gene_variability_pctl"],
    n_prin_comps=DOUBLET_PARAMS["n_prin_comps"],
    min_cells_per_library=DOUBLET_PARAMS["min_cells_per_library"],
    manual_threshold=None,
    save_dir=None,
):
    """Detect doublets with Scrublet, one library at a time

    Hashing catches doublets across hashtags; Scrublet also catches those
    formed by two cells of the same sample.

    Args:
        adata: AnnData object with raw counts in X
        sample_col: Column name for library identification
        expected_doublet_rate: Expected doublet rate
        min_cells_per_library: Libraries with fewer cells are skipped
        manual_threshold: If set, use this threshold instead of automatic
        save_dir: Directory to save score histograms

    Returns:
        AnnData object with doublet predictions and scores
    """
    print("Detecting doublets with Scrublet...")

    all_scores = np.zeros(adata.n_obs)
    all_predictions = np.zeros(adata.n_obs, dtype=bool)
    histograms = {}

    for sample in adata.obs[sample_col].unique():
        print(f"Processing library: {sample}")

        mask = (adata.obs[sample_col] == sample).values
        sample_indices = np.where(mask)[0]

        if mask.sum() < min_cells_per_library:
            print(f"  Skipping - only {mask.sum()} cells")
            continue

        scrub = scr.Scrublet(adata[mask].X.copy(), expected_doublet_rate=expected_doublet_rate)
        doublet_scores, predicted_doublets = scrub.scrub_doublets(
            min_counts=min_counts,
            min_cells=min_cells,
            min_gene_variability_pctl=min_gene_variability_pctl,
            n_prin_comps=n_prin_comps,
            verbose=False,
        )

        if manual_threshold is not None:
            threshold = manual_threshold
            predicted_doublets = doublet_scores > threshold
        else:
            threshold = getattr(scrub, "threshold_", None)

        # Scrublet returns None when it cannot place a threshold
        if predicted_doublets is None:
            predicted_doublets = np.zeros(len(doublet_scores), dtype=bool)

        all_scores[sample_indices] = doublet_scores
        all_predictions[sample_indices] = predicted_doublets
        histograms[sample] = (doublet_scores, threshold)

        n_doublets = int(np.sum(predicted_doublets))
        print(f"  Cells: {len(doublet_scores)}")
        print(f"  Doublets: {n_doublets} ({n_doublets / len(doublet_scores) * 100:.1f}%)")

    if save_dir and histograms:
        n = len(histograms)
        fig, axes = plt.subplots(1, n, figsize=(4 * n, 3.5), squeeze=False)
        for ax, (sample, (scores, threshold)) in zip(axes[0], histograms.items()):
            ax.hist(scores, bins=50, alpha=0.7, edgecolor="black")
            if threshold is not None:
                ax.axvline(threshold, color="red", linestyle="--")
            ax.set_title(str(sample))
            ax.set_xlabel("Doublet Score")
        plt.tight_layout()
        fig.savefig(save_dir / "doublet_score_histograms.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/doublet_score_histograms.png")
        plt.close(fig)

    adata.obs["doublet_score"] = all_scores
    adata.obs["predicted_doublet"] = all_predictions

    print(f"Total doublets: {all_predictions.sum():,} / {adata.n_obs:,}")

    return adata


def filter_cells_and_genes(
    adata,
    min_genes=CELL_FILTERS["min_genes"],
    max_genes=CELL_FILTERS["max_genes"],
    max_mt_pct=CELL_FILTERS["max_mt_pct"],
    min_counts=CELL_FILTERS["min_counts"],
    max_counts=CELL_FILTERS["max_counts"],
    max_ribo_pct=CELL_FILTERS["max_ribo_pct"],
    min_cells=GENE_FILTERS["min_cells"],
):
    """Apply QC filtering

    Args:
        adata: AnnData object with QC metrics
        min_genes: Minimum genes per cell
        max_genes: Maximum genes per cell
        max_mt_pct: Maximum mitochondrial percentage
        min_counts: Minimum total counts per cell (optional)
        max_counts: Maximum total counts per cell (optional)
        max_ribo_pct: Maximum ribosomal percentage (optional)
        min_cells: Minimum cells expressing a gene

    Returns:
        Filtered AnnData object (copy)
    """
    print("Applying QC filters...")
    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")

    obs = adata.obs
    keep = (obs["n_genes_by_counts"] >= min_genes) & (obs["n_genes_by_counts"] < max_genes)
    keep &= obs["percent_mt"] < max_mt_pct

    if min_counts is not None:
        keep &= obs["total_counts"] >= min_counts
    if max_counts is not None:
        keep &= obs["total_counts"] <= max_counts
    if max_ribo_pct is not None:
        keep &= obs["percent_ribo"] < max_ribo_pct
    if "predicted_doublet" in obs:
        keep &= ~obs["predicted_doublet"].astype(bool)

    adata = adata[keep.values].copy()
    sc.pp.filter_genes(adata, min_cells=min_cells)

    print(f"After filtering: {adata.n_obs} cells and {adata.n_vars} genes")

    return adata


def filtering_report(before, after, groupby="library"):
    """Cells retained per group after filtering"""
    n_before = before.obs[groupby].value_counts()
    n_after = after.obs[groupby].value_counts().reindex(n_before.index, fill_value=0)
    report = pd.DataFrame({"n_before": n_before, "n_after": n_after})
    report["pct_retained"] = (report["n_after"] / report["n_before"] * 100).round(2)
    return report
