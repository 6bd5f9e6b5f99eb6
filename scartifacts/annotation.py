#!/usr/bin/env python3
"""
Cell type annotation utilities for peripheral blood cells
Handles marker gene scoring, cluster-level assignment and composition tables
"""

import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
import seaborn as sns

# Module-level constants: single sources of truth
MARKER_GENES = {
    "CD4 T": ["IL7R", "CD4", "CCR7", "LEF1"],
    "CD8 T": ["CD8A", "CD8B", "GZMK"],
    "NK": ["GNLY", "NKG7", "KLRD1", "PRF1"],
    "B": ["MS4A1", "CD79A", "CD79B", "CD19"],
    "CD14 Monocyte": ["CD14", "LYZ", "S100A8", "S100A9"],
    "FCGR3A Monocyte": ["FCGR3A", "MS4A7", "LST1"],
    "Dendritic": ["FCER1A", "CST3", "CD1C"],
    "Plasmacytoid DC": ["LILRA4", "IL3RA", "TCF4"],
    "Platelet": ["PPBP", "PF4"],
}

UNKNOWN_LABEL = "Unknown"


def _score_marker_sets(adata, marker_genes):
    use_raw = adata.raw is not None
    var_names = adata.raw.var_names if use_raw else adata.var_names

    score_cols = []
    for label, genes in marker_genes.items():
        present = [g for g in genes if g in var_names]
        if not present:
            continue
        score_name = f"score_{label}"
        sc.tl.score_genes(adata, gene_list=present, score_name=score_name, use_raw=use_raw)
        score_cols.append(score_name)
    return score_cols


def assign_celltypes_by_cluster_scores(
    adata,
    cluster_key="louvain",
    marker_genes=MARKER_GENES,
    margin=0.05,
    agg="median",
):
    """Assign cell types at the cluster level using module scores

    Each marker set is scored per cell, the scores are aggregated per cluster,
    and a cluster takes the best label when it beats the runner-up by at least
    `margin`. Otherwise it is labelled "Unknown".

    Args:
        adata: AnnData object with clusters
        cluster_key: obs column with cluster labels
        marker_genes: Dictionary of cell type markers
        margin: Confidence margin between top and second-best scores
        agg: Aggregation method ('median' or 'mean')

    Returns:
        AnnData object with "celltype" and "annotation_confidence"
    """
    if cluster_key not in adata.obs:
        raise ValueError(f"Missing required columns: ['{cluster_key}']")
    if agg not in ("median", "mean"):
        raise ValueError(f"Unknown aggregation: {agg}")

    print("Assigning cell types from marker scores...")

    score_cols = _score_marker_sets(adata, marker_genes)
    if not score_cols:
        raise ValueError("None of the marker genes are present in the data")

    grouped = adata.obs.groupby(cluster_key, observed=True)[score_cols].agg(agg)
    values = grouped.to_numpy()
    top_idx = np.argmax(values, axis=1)
    best = values[np.arange(values.shape[0]), top_idx]
    if values.shape[1] > 1:
        second_best = np.partition(values, -2, axis=1)[:, -2]
    else:
        second_best = np.full(values.shape[0], -np.inf)

    labels = np.array([c.replace("score_", "") for c in score_cols])
    confident = best - second_best >= margin

    cluster_to_label = {}
    cluster_to_conf = {}
    for cluster_id, label, is_conf in zip(grouped.index.astype(str), labels[top_idx], confident):
        cluster_to_label[cluster_id] = label if is_conf else UNKNOWN_LABEL
        cluster_to_conf[cluster_id] = "high" if is_conf else "low"

    clusters = adata.obs[cluster_key].astype(str)
    adata.obs["celltype"] = pd.Categorical(clusters.map(cluster_to_label))
    adata.obs["annotation_confidence"] = clusters.map(cluster_to_conf).values

    print(f"Assigned {confident.sum()} / {len(grouped)} clusters")
    for ct, count in adata.obs["celltype"].value_counts().items():
        print(f"  {ct}: {count:,}")

    return adata


def create_cluster_aggregated_labels(
    adata, celltype_col="celltype", cluster_col="louvain", purity_threshold=0.60
):
    """Create cluster-level cell type labels with mixed cluster detection.

    For each cluster:
    - If the dominant cell type is >purity_threshold: assigns that cell type
    - Otherwise labels the cluster "Mixed" and stores the top 2-3 cell types

    Side effects:
        - Adds 'celltype_cluster', 'celltype_cluster_top_types' and
          'cluster_purity' to adata.obs

    Returns:
        List of mixed cluster ids
    """
    missing = [c for c in (celltype_col, cluster_col) if c not in adata.obs]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    composition = pd.crosstab(
        adata.obs[cluster_col].astype(str), adata.obs[celltype_col].astype(str), normalize="index"
    )

    dominant = composition.idxmax(axis=1)
    dominant_prop = composition.max(axis=1)

    top_types = {}
    cluster_labels = {}
    mixed_clusters = []
    for cluster_id in composition.index:
        sorted_types = composition.loc[cluster_id].sort_values(ascending=False)
        top = sorted_types[sorted_types > 0.05].head(3)
        top_types[cluster_id] = ", ".join(f"{ct} ({prop*100:.1f}%)" for ct, prop in top.items())

        if dominant_prop[cluster_id] > purity_threshold:
            cluster_labels[cluster_id] = dominant[cluster_id]
        else:
            cluster_labels[cluster_id] = "Mixed"
            mixed_clusters.append(cluster_id)

    clusters = adata.obs[cluster_col].astype(str)
    adata.obs["celltype_cluster"] = clusters.map(cluster_labels).values
    adata.obs["celltype_cluster_top_types"] = clusters.map(top_types).values
    adata.obs["cluster_purity"] = clusters.map(dominant_prop).astype(float).values

    print(f"Purity threshold: {purity_threshold*100:.0f}%")
    print(f"Pure clusters: {len(cluster_labels) - len(mixed_clusters)}")
    print(f"Mixed clusters: {len(mixed_clusters)}")
    for cluster_id in mixed_clusters:
        print(f"  Cluster {cluster_id}: {top_types[cluster_id]}")

    return mixed_clusters


def celltype_composition(adata, condition="time", celltype_col="celltype", donor_col="donor"):
    """Proportion of each cell type per donor and condition level

    Returns:
        Long DataFrame with donor, condition, celltype, n_cells and proportion
    """
    missing = [c for c in (condition, celltype_col, donor_col) if c not in adata.obs]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    counts = (
        adata.obs.groupby([donor_col, condition, celltype_col], observed=True)
        .size()
        .rename("n_cells")
        .reset_index()
    )
    totals = counts.groupby([donor_col, condition], observed=True)["n_cells"].transform("sum")
    counts["proportion"] = counts["n_cells"] / totals
    return counts


def plot_marker_genes(adata, marker_genes=MARKER_GENES, groupby="louvain", save_dir=None):
    """Dot plot of marker genes across clusters

    Args:
        adata: AnnData object with clustering results
        groupby: obs column to group by
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    var_names = adata.raw.var_names if adata.raw is not None else adata.var_names
    available = {
        ct: [g for g in genes if g in var_names] for ct, genes in marker_genes.items()
    }
    available = {ct: genes for ct, genes in available.items() if genes}
    if not available:
        print("No marker genes found, skipping dot plot")
        return

    sc.pl.dotplot(adata, available, groupby=groupby, standard_scale="var", show=False)

    if save_dir:
        plt.savefig(save_dir / "marker_genes_dotplot.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/marker_genes_dotplot.png")
        plt.close("all")
    else:
        plt.show()


def plot_cell_type_summary(adata, save_dir=None):
    """UMAP coloured by cell type next to cell type counts"""
    fig, axes = plt.subplots(1, 2, figsize=(14, 5))

    if "X_umap" in adata.obsm:
        sc.pl.umap(adata, color="celltype", ax=axes[0], show=False, title="Cell types")
    else:
        axes[0].axis("off")

    counts = adata.obs["celltype"].value_counts()
    axes[1].barh(counts.index.astype(str), counts.values, color="steelblue")
    axes[1].invert_yaxis()
    axes[1].set_xlabel("Cells")
    axes[1].set_title("Cells per type")

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "cell_type_summary.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/cell_type_summary.png")
        plt.close(fig)
    else:
        plt.show()


def plot_celltype_composition(composition, condition="time", save_dir=None):
    """Stacked bar chart of mean cell type proportions per condition level"""
    mean_props = (
        composition.groupby([condition, "celltype"], observed=True)["proportion"]
        .mean()
        .unstack(fill_value=0)
    )

    fig, ax = plt.subplots(figsize=(8, 5))
    colors = sns.color_palette("tab20", n_colors=mean_props.shape[1])
    mean_props.plot(kind="bar", stacked=True, ax=ax, color=colors, width=0.8)
    ax.set_ylabel("Mean proportion")
    ax.set_xlabel(condition)
    ax.legend(title="Cell type", bbox_to_anchor=(1.0, 1.0), loc="upper left")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / f"celltype_composition_{condition}.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/celltype_composition_{condition}.png")
        plt.close(fig)
    else:
        plt.show()

    return mean_props
