#!/usr/bin/env python3
"""
Processing utilities for the sampling-artifact study
Handles normalization, PCA, UMAP, and graph-based clustering
"""

import os
import random
import igraph
import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
from scipy import sparse
from sklearn.metrics import silhouette_score

from scartifacts.config import CLUSTER_PARAMS

CLUSTER_METHODS = ("louvain", "leiden")


def normalize_and_scale(adata, n_top_genes=None):
    """Normalize, log-transform and flag highly variable genes

    All genes are kept: raw counts go to layers["counts"] (pseudobulk input),
    log-normalized values to X and .raw (scoring and cell-level tests).
    Scaling is applied to the highly variable genes when running PCA.

    Args:
        adata: AnnData object with raw counts in X
        n_top_genes: Number of highly variable genes (None = dispersion cutoffs)

    Returns:
        Processed AnnData object
    """
    print("Normalizing data...")

    adata.layers["counts"] = adata.X.copy()

    # Normalize to 10,000 reads per cell
    sc.pp.normalize_total(adata, target_sum=1e4)
    sc.pp.log1p(adata)
    adata.raw = adata

    if n_top_genes:
        sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes)
    else:
        sc.pp.highly_variable_genes(adata, min_mean=0.0125, max_mean=3, min_disp=0.5)

    print(f"  Highly variable genes: {adata.var['highly_variable'].sum():,}")

    return adata


def run_pca(adata, n_comps=50):
    """Scale highly variable genes and run PCA

    Args:
        adata: Normalized AnnData object with var["highly_variable"]
        n_comps: Number of components

    Returns:
        AnnData object with obsm["X_pca"]
    """
    print("Running PCA...")

    if "highly_variable" in adata.var and adata.var["highly_variable"].any():
        hvg = adata[:, adata.var["highly_variable"].values].copy()
    else:
        hvg = adata.copy()

    sc.pp.scale(hvg, max_value=10)
    n_comps = min(n_comps, hvg.n_obs - 1, hvg.n_vars - 1)
    sc.tl.pca(hvg, svd_solver="arpack", n_comps=n_comps)

    adata.obsm["X_pca"] = hvg.obsm["X_pca"]
    adata.uns["pca"] = hvg.uns["pca"]

    return adata


def _louvain_igraph(adata, resolution, key_added, random_state=0):
    """Louvain (multilevel) community detection on the kNN graph"""
    adjacency = sparse.triu(adata.obsp["connectivities"], k=1).tocoo()

    edges = list(zip(adjacency.row.tolist(), adjacency.col.tolist()))
    graph = igraph.Graph(n=adata.n_obs, edges=edges)
    graph.es["weight"] = adjacency.data.tolist()

    # igraph draws from the random module
    state = random.getstate()
    random.seed(random_state)
    try:
        partition = graph.community_multilevel(weights="weight", resolution=resolution)
    finally:
        random.setstate(state)

    labels = np.asarray(partition.membership)
    # Relabel by decreasing size, as scanpy does
    sizes = pd.Series(labels).value_counts()
    relabel = {old: str(new) for new, old in enumerate(sizes.index)}
    categories = [str(i) for i in range(len(sizes))]
    adata.obs[key_added] = pd.Categorical(
        [relabel[label] for label in labels], categories=categories
    )
    return adata


def cluster_cells(adata, method="louvain", resolution=1.0, key_added=None, random_state=0):
    """Graph clustering on the neighbourhood graph

    Args:
        adata: AnnData object with a neighbourhood graph
        method: "louvain" or "leiden"
        resolution: Clustering resolution
        key_added: obs column for the labels (defaults to the method name)

    Returns:
        AnnData object with cluster labels
    """
    if method not in CLUSTER_METHODS:
        raise ValueError(f"Unknown clustering method: {method}. Use one of {CLUSTER_METHODS}")

    key_added = key_added or method
    if method == "louvain":
        _louvain_igraph(adata, resolution, key_added, random_state=random_state)
    else:
        sc.tl.leiden(
            adata,
            resolution=resolution,
            key_added=key_added,
            flavor="igraph",
            n_iterations=2,
            directed=False,
            random_state=random_state,
        )
    return adata


def run_pca_umap_clustering(
    adata,
    n_pcs=CLUSTER_PARAMS["n_pcs"],
    n_neighbors=CLUSTER_PARAMS["n_neighbors"],
    resolution=CLUSTER_PARAMS["resolution"],
    method=CLUSTER_PARAMS["method"],
    save_dir=None,
):
    """Run PCA, UMAP and clustering

    Args:
        adata: Normalized AnnData object
        n_pcs: Number of principal components for the neighbourhood graph
        n_neighbors: Number of neighbours
        resolution: Clustering resolution
        method: "louvain" or "leiden"
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.

    Returns:
        AnnData object with embeddings and clusters
    """
    if method not in CLUSTER_METHODS:
        raise ValueError(f"Unknown clustering method: {method}. Use one of {CLUSTER_METHODS}")

    if "X_pca" not in adata.obsm:
        run_pca(adata)

    n_pcs = min(n_pcs, adata.obsm["X_pca"].shape[1])

    if save_dir:
        os.makedirs(save_dir, exist_ok=True)
        ratios = adata.uns["pca"]["variance_ratio"]
        fig, ax = plt.subplots(figsize=(6, 4))
        ax.plot(np.arange(1, len(ratios) + 1), ratios, "o-", markersize=3)
        ax.axvline(n_pcs, color="gray", linestyle="--", linewidth=1)
        ax.set_xlabel("PC")
        ax.set_ylabel("Variance ratio")
        ax.set_title("PCA elbow plot")
        fig.tight_layout()
        fig.savefig(save_dir / "pca_elbow_plot.png", dpi=300, bbox_inches="tight")
        plt.close(fig)
        print(f"  Saved: {save_dir}/pca_elbow_plot.png")

    print("Computing neighborhood graph...")
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs)

    print("Running UMAP...")
    sc.tl.umap(adata)

    print(f"Clustering ({method}, resolution {resolution})...")
    cluster_cells(adata, method=method, resolution=resolution)
    print(f"  Clusters: {adata.obs[method].nunique()}")

    return adata


def choose_resolution(
    adata,
    resolution_grid=None,
    method=CLUSTER_PARAMS["method"],
    min_cluster_size=20,
    save_dir=None,
):
    """Sweep clustering resolutions and pick a robust choice.

    Strategy:
    - Cluster for a grid of resolutions on the existing kNN graph
    - Evaluate silhouette on PCA space and fraction of cells in small clusters
    - Select the resolution with highest silhouette; among ties within 0.02 of max,
      prefer lower small-cluster fraction, then fewer clusters, then lower resolution

    Side effects:
    - Adds columns `{method}_{res}` to `adata.obs` for each tested resolution
    - Sets `adata.obs[method]` to the labels of the chosen resolution
    - Writes sweep metrics CSV and a diagnostic plot if `save_dir` set

    Returns:
    - chosen resolution (float)
    """
    if resolution_grid is None:
        resolution_grid = np.round(np.arange(0.2, 2.05, 0.2), 2)

    if "X_pca" not in adata.obsm:
        run_pca(adata)

    X = adata.obsm["X_pca"]

    metrics = []
    for res in resolution_grid:
        key = f"{method}_{res:.2f}"
        cluster_cells(adata, method=method, resolution=float(res), key_added=key)
        labels = adata.obs[key].astype(str)

        n_clusters = labels.nunique()
        small_frac = 0.0
        sil = np.nan
        if 1 < n_clusters < len(labels):
            counts = labels.value_counts()
            small_frac = float(
                counts[counts < max(2, int(min_cluster_size))].sum() / len(labels)
            )
            sil = float(silhouette_score(X, labels))

        metrics.append(
            {
                "resolution": float(res),
                "n_clusters": int(n_clusters),
                "silhouette": sil,
                "small_cluster_fraction": small_frac,
            }
        )

    metrics_df = pd.DataFrame(metrics)

    if metrics_df["silhouette"].notna().any():
        max_sil = metrics_df["silhouette"].max()
        near = metrics_df[np.abs(metrics_df["silhouette"] - max_sil) <= 0.02]
        chosen = near.sort_values(
            by=["small_cluster_fraction", "n_clusters", "resolution"],
            ascending=[True, True, True],
        ).iloc[0]
    else:
        # Fallback: the lowest resolution with >1 cluster
        candidates = metrics_df[metrics_df["n_clusters"] > 1]
        if candidates.empty:
            candidates = metrics_df
        chosen = candidates.sort_values("resolution").iloc[0]

    chosen_res = float(chosen["resolution"])

    if save_dir:
        os.makedirs(save_dir, exist_ok=True)
        metrics_path = save_dir / f"{method}_resolution_sweep.csv"
        metrics_df.to_csv(metrics_path, index=False)

        fig, ax1 = plt.subplots(figsize=(7, 4))
        ax2 = ax1.twinx()
        ax1.plot(metrics_df["resolution"], metrics_df["silhouette"], "-o", color="#1f77b4")
        ax2.plot(metrics_df["resolution"], metrics_df["n_clusters"], "-s", color="#ff7f0e")
        ax1.set_xlabel(f"{method} resolution")
        ax1.set_ylabel("Silhouette (PCA)", color="#1f77b4")
        ax2.set_ylabel("# clusters", color="#ff7f0e")
        ax1.axvline(chosen_res, color="gray", linestyle="--", linewidth=1)
        fig.tight_layout()
        fig.savefig(save_dir / f"{method}_sweep_diagnostics.png", dpi=300, bbox_inches="tight")
        plt.close(fig)
        print(f"  Saved: {metrics_path}")
        print(f"  Saved: {save_dir}/{method}_sweep_diagnostics.png")

    adata.obs[method] = adata.obs[f"{method}_{chosen_res:.2f}"]
    adata.uns[f"{method}_optimal_resolution"] = chosen_res
    print(f"Chosen {method} resolution: {chosen_res}")

    return chosen_res


def plot_embeddings(adata, color=("louvain", "time", "temperature", "donor"), save_dir=None):
    """Plot UMAP embeddings coloured by the columns that are present

    Args:
        adata: AnnData object with UMAP coordinates
        color: obs columns to colour by
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting embeddings...")

    keys = [c for c in color if c in adata.obs]
    if not keys:
        print("No requested columns found, skipping embedding plot")
        return

    n_cols = min(2, len(keys))
    n_rows = int(np.ceil(len(keys) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(6 * n_cols, 5 * n_rows), squeeze=False)

    for key, ax in zip(keys, axes.flat):
        sc.pl.umap(adata, color=key, title=key, ax=ax, show=False)
    for ax in list(axes.flat)[len(keys):]:
        ax.axis("off")

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "umap_embeddings.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/umap_embeddings.png")
        plt.close(fig)
    else:
        plt.show()
