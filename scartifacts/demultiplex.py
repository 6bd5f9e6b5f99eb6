#!/usr/bin/env python3
"""
Cell hashing demultiplexing utilities
Assigns each cell barcode to a hashtag (sample), or flags it as doublet/negative
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats
from sklearn.cluster import KMeans

from scartifacts.config import HASHTAG_PARAMS

CLASSIFICATIONS = ["Singlet", "Doublet", "Negative"]


def clr_normalize(counts):
    """Centred log-ratio transform of hashtag counts, per hashtag

    Args:
        counts: DataFrame (cells x hashtags)

    Returns:
        DataFrame of the same shape
    """
    values = counts.to_numpy(dtype=float)
    log_values = np.log1p(values)
    geo_means = np.exp(log_values.mean(axis=0))
    geo_means[geo_means == 0] = 1.0
    normalized = np.log1p(values / geo_means)
    return pd.DataFrame(normalized, index=counts.index, columns=counts.columns)


def _background_cutoff(values, positive_quantile):
    """Quantile of a negative binomial fitted to background counts

    Method of moments; falls back to Poisson when the counts are not
    overdispersed.
    """
    values = np.asarray(values, dtype=float)
    if len(values) == 0:
        return 0.0

    mu = values.mean()
    if mu == 0:
        return 0.0

    var = values.var(ddof=1) if len(values) > 1 else mu
    if var <= mu:
        return float(stats.poisson.ppf(positive_quantile, mu))

    size = mu ** 2 / (var - mu)
    prob = size / (size + mu)
    return float(stats.nbinom.ppf(positive_quantile, size, prob))


def hto_demux(
    adata,
    hto_key="hto",
    positive_quantile=HASHTAG_PARAMS["positive_quantile"],
    n_clusters=HASHTAG_PARAMS["n_clusters"],
    kfunc=HASHTAG_PARAMS["kfunc"],
    seed=HASHTAG_PARAMS["seed"],
):
    """Demultiplex hashtag counts

    Strategy:
    - CLR-normalize hashtag counts
    - Cluster cells on normalized values (k = n_hashtags + 1 by default)
    - For each hashtag, the cluster with the lowest mean count is background;
      fit a negative binomial to it and call cells above the quantile positive
    - 0 positives -> Negative, 1 -> Singlet, >=2 -> Doublet

    Args:
        adata: AnnData with hashtag counts in obsm[hto_key]
        hto_key: obsm key of the hashtag count table
        positive_quantile: Quantile of the background distribution used as cutoff
        n_clusters: Number of clusters (None = n_hashtags + 1)
        kfunc: Clustering function, only "kmeans" is supported
        seed: Random seed

    Returns:
        AnnData object with demultiplexing columns added
    """
    print("Demultiplexing hashtags...")

    if hto_key not in adata.obsm:
        raise ValueError(f"No hashtag counts found in obsm['{hto_key}']")
    if kfunc != "kmeans":
        raise ValueError(f"Unsupported clustering function: {kfunc}")

    hto = adata.obsm[hto_key]
    if not isinstance(hto, pd.DataFrame):
        hto = pd.DataFrame(np.asarray(hto), index=adata.obs_names)
        hto.columns = [f"HTO-{i}" for i in range(hto.shape[1])]
    if hto.shape[1] < 2:
        raise ValueError("At least two hashtags are required for demultiplexing")

    counts = hto.to_numpy(dtype=float)
    normalized = clr_normalize(hto)
    hashtags = np.asarray(hto.columns.astype(str))

    k = n_clusters or len(hashtags) + 1
    k = min(k, adata.n_obs)
    labels = KMeans(n_clusters=k, n_init=10, random_state=seed).fit_predict(
        normalized.to_numpy()
    )
    cluster_ids = np.unique(labels)

    positive = np.zeros(counts.shape, dtype=bool)
    thresholds = {}
    for j, name in enumerate(hashtags):
        cluster_means = [counts[labels == c, j].mean() for c in cluster_ids]
        background = cluster_ids[int(np.argmin(cluster_means))]
        values = counts[labels == background, j]
        # Trim the extreme tail before fitting
        values = values[values <= np.quantile(values, 0.995)]
        cutoff = _background_cutoff(values, positive_quantile)
        thresholds[name] = cutoff
        positive[:, j] = counts[:, j] > cutoff

    n_positive = positive.sum(axis=1)

    norm_values = normalized.to_numpy()
    order = np.argsort(-norm_values, axis=1)
    sorted_values = np.take_along_axis(norm_values, order, axis=1)
    max_id = hashtags[order[:, 0]]
    second_id = hashtags[order[:, 1]]

    global_class = np.where(
        n_positive == 0, "Negative", np.where(n_positive == 1, "Singlet", "Doublet")
    )
    classification = np.where(global_class == "Singlet", max_id, global_class).astype(object)
    doublet_mask = global_class == "Doublet"
    classification[doublet_mask] = [
        "_".join(sorted(pair)) for pair in zip(max_id[doublet_mask], second_id[doublet_mask])
    ]

    adata.obs["hto_maxID"] = max_id
    adata.obs["hto_secondID"] = second_id
    adata.obs["hto_margin"] = sorted_values[:, 0] - sorted_values[:, 1]
    adata.obs["hto_classification"] = classification
    adata.obs["hto_classification_global"] = pd.Categorical(
        global_class, categories=CLASSIFICATIONS
    )
    adata.obsm[f"{hto_key}_clr"] = normalized
    adata.uns["hto_thresholds"] = {name: float(v) for name, v in thresholds.items()}

    counts_by_class = adata.obs["hto_classification_global"].value_counts()
    for label in CLASSIFICATIONS:
        print(f"  {label}: {counts_by_class.get(label, 0):,}")

    return adata


def summarize_demultiplexing(adata, groupby="library"):
    """Counts and percentages of Singlet/Doublet/Negative per group

    Returns:
        DataFrame indexed by group
    """
    table = pd.crosstab(
        adata.obs[groupby], adata.obs["hto_classification_global"], dropna=False
    )
    table = table.reindex(columns=CLASSIFICATIONS, fill_value=0)
    table["n_cells"] = table[CLASSIFICATIONS].sum(axis=1)
    for label in CLASSIFICATIONS:
        table[f"pct_{label.lower()}"] = (table[label] / table["n_cells"] * 100).round(2)
    return table


def keep_singlets(adata):
    """Subset to cells classified as singlets"""
    mask = (adata.obs["hto_classification_global"] == "Singlet").values
    print(f"Keeping {mask.sum():,} singlets out of {adata.n_obs:,} cells")
    return adata[mask].copy()


def plot_hto_demultiplexing(adata, hto_key="hto", save_dir=None):
    """Plot normalized hashtag values per assigned hashtag and the classification

    Args:
        adata: AnnData object after hto_demux
        hto_key: obsm key of the raw hashtag table
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting hashtag demultiplexing...")

    normalized = adata.obsm[f"{hto_key}_clr"]
    long_df = normalized.copy()
    long_df["hto_maxID"] = adata.obs["hto_maxID"].values
    long_df = long_df.melt(id_vars="hto_maxID", var_name="hashtag", value_name="clr")

    fig, axes = plt.subplots(1, 2, figsize=(14, 5), gridspec_kw={"width_ratios": [3, 1]})

    sns.violinplot(
        data=long_df, x="hashtag", y="clr", hue="hto_maxID", ax=axes[0], inner=None, cut=0
    )
    axes[0].set_title("Normalized hashtag expression by max hashtag")
    axes[0].set_ylabel("CLR")
    axes[0].legend(title="max hashtag", bbox_to_anchor=(1.0, 1.0), loc="upper left")

    counts = adata.obs["hto_classification_global"].value_counts().reindex(CLASSIFICATIONS)
    axes[1].bar(counts.index, counts.values, color=["#4c72b0", "#dd8452", "#8c8c8c"])
    axes[1].set_title("Global classification")
    axes[1].set_ylabel("Cells")

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "hto_demultiplexing.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/hto_demultiplexing.png")
        plt.close(fig)
    else:
        plt.show()
