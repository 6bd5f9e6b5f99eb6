#!/usr/bin/env python3
"""
Batch effect testing for sampling conditions
k-nearest-neighbour batch effect test (kBET) on a reduced-dimensional embedding
"""

from dataclasses import dataclass, field
from typing import List

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats
from sklearn.neighbors import NearestNeighbors

from scartifacts.config import KBET_PARAMS


@dataclass
class KbetResult:
    """Outcome of one kBET run"""

    rejection_rate: float
    expected_rejection_rate: float
    k0: int
    n_tested: int
    observed_rates: List[float] = field(default_factory=list)
    expected_rates: List[float] = field(default_factory=list)

    @property
    def acceptance_rate(self) -> float:
        return 1.0 - self.rejection_rate


def default_k0(batch_sizes):
    """Neighbourhood size: a quarter of the mean batch size, clamped to [10, 100]"""
    k0 = int(np.floor(np.mean(batch_sizes) * 0.25))
    return max(10, min(100, k0))


def _neighbourhood_pvalues(codes, neighbours, frequencies):
    """Chi-squared p-value of each neighbourhood's batch composition"""
    n_batches = len(frequencies)
    k0 = neighbours.shape[1]
    labels = codes[neighbours]
    observed = np.stack([(labels == b).sum(axis=1) for b in range(n_batches)], axis=1)
    expected = frequencies * k0
    chi2 = ((observed - expected) ** 2 / expected).sum(axis=1)
    return stats.chi2.sf(chi2, df=n_batches - 1)


def kbet(
    embedding,
    batch,
    k0=KBET_PARAMS["k0"],
    alpha=KBET_PARAMS["alpha"],
    test_size=KBET_PARAMS["test_size"],
    n_repeats=KBET_PARAMS["n_repeats"],
    seed=KBET_PARAMS["seed"],
):
    """Run kBET

    For a random subset of cells, the batch composition of the k0 nearest
    neighbours (the cell included) is compared with the global batch
    frequencies by a chi-squared test. The rejection rate is the fraction of
    tested cells with p < alpha, averaged over repeats. The expected rejection
    rate comes from the same test after permuting batch labels.

    Args:
        embedding: Array (cells x dims), e.g. PCA coordinates
        batch: Batch label per cell
        k0: Neighbourhood size (None = default_k0)
        alpha: Significance level
        test_size: Fraction of cells tested per repeat
        n_repeats: Number of repeats
        seed: Random seed

    Returns:
        KbetResult
    """
    embedding = np.asarray(embedding, dtype=float)
    batch = np.asarray(batch).astype(str)
    n_cells = len(batch)

    if embedding.shape[0] != n_cells:
        raise ValueError("embedding and batch must have the same number of cells")

    levels, codes = np.unique(batch, return_inverse=True)
    if len(levels) < 2:
        raise ValueError("kBET needs at least two batches")

    batch_sizes = np.bincount(codes)
    frequencies = batch_sizes / n_cells

    if k0 is None:
        k0 = default_k0(batch_sizes)
    # Neighbourhoods must leave some cells out
    k0 = int(min(k0, n_cells - 1))

    nn = NearestNeighbors(n_neighbors=k0).fit(embedding)
    _, neighbours = nn.kneighbors(embedding)

    p_values = _neighbourhood_pvalues(codes, neighbours, frequencies)

    rng = np.random.default_rng(seed)
    n_test = max(1, int(round(test_size * n_cells)))

    observed_rates = []
    expected_rates = []
    for _ in range(n_repeats):
        tested = rng.choice(n_cells, size=n_test, replace=False)
        observed_rates.append(float(np.mean(p_values[tested] < alpha)))

        permuted = rng.permutation(codes)
        null_p = _neighbourhood_pvalues(permuted, neighbours[tested], frequencies)
        expected_rates.append(float(np.mean(null_p < alpha)))

    return KbetResult(
        rejection_rate=float(np.mean(observed_rates)),
        expected_rejection_rate=float(np.mean(expected_rates)),
        k0=k0,
        n_tested=n_test,
        observed_rates=observed_rates,
        expected_rates=expected_rates,
    )


def kbet_by_condition(
    adata,
    condition="time",
    reference="0h",
    groupby="celltype",
    use_rep="X_pca",
    n_pcs=KBET_PARAMS["n_pcs"],
    min_cells_per_batch=KBET_PARAMS["min_cells_per_batch"],
    **kbet_kwargs,
):
    """kBET between the reference level and every other level

    Runs within each group (cell type) so that composition differences do not
    masquerade as batch effects. Pass groupby=None to test all cells together.

    Args:
        adata: AnnData object with an embedding in obsm[use_rep]
        condition: obs column holding the sampling condition
        reference: Reference level (e.g. fresh "0h" samples)
        groupby: obs column to stratify by, or None
        use_rep: obsm key of the embedding
        n_pcs: Number of embedding dimensions used
        min_cells_per_batch: Skip comparisons with fewer cells in either level

    Returns:
        Long DataFrame with one row per group and level
    """
    required = [condition] + ([groupby] if groupby else [])
    missing = [c for c in required if c not in adata.obs]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")
    if use_rep not in adata.obsm:
        raise ValueError(f"No embedding found in obsm['{use_rep}']")

    print(f"Running kBET ({condition} vs {reference})...")

    embedding = np.asarray(adata.obsm[use_rep])[:, :n_pcs]
    conditions = adata.obs[condition].astype(str).values
    levels = [str(lv) for lv in pd.unique(adata.obs[condition].dropna())]
    if hasattr(adata.obs[condition], "cat"):
        levels = [str(lv) for lv in adata.obs[condition].cat.categories if str(lv) in set(conditions)]

    if groupby:
        groups = [g for g in pd.unique(adata.obs[groupby].dropna())]
        group_values = adata.obs[groupby].astype(str).values
    else:
        groups = ["all"]
        group_values = np.full(adata.n_obs, "all")

    rows = []
    for group in groups:
        in_group = group_values == str(group)
        for level in levels:
            if level == str(reference):
                continue
            in_ref = in_group & (conditions == str(reference))
            in_level = in_group & (conditions == level)
            if in_ref.sum() < min_cells_per_batch or in_level.sum() < min_cells_per_batch:
                print(f"  Skipping {group} / {level}: too few cells")
                continue

            mask = in_ref | in_level
            result = kbet(embedding[mask], conditions[mask], **kbet_kwargs)
            rows.append(
                {
                    "celltype": str(group),
                    "level": level,
                    "n_cells": int(mask.sum()),
                    "k0": result.k0,
                    "rejection_rate": result.rejection_rate,
                    "expected_rejection_rate": result.expected_rejection_rate,
                    "acceptance_rate": result.acceptance_rate,
                }
            )
            print(f"  {group} / {level}: acceptance {result.acceptance_rate:.2f}")

    results = pd.DataFrame(
        rows,
        columns=[
            "celltype",
            "level",
            "n_cells",
            "k0",
            "rejection_rate",
            "expected_rejection_rate",
            "acceptance_rate",
        ],
    )
    adata.uns["kbet"] = results

    return results


def plot_kbet(results, level_order=None, save_dir=None):
    """Acceptance rate per condition level, one line per cell type

    Args:
        results: DataFrame from kbet_by_condition
        level_order: Order of levels on the x axis
        save_dir: Directory to save plots (optional)
    """
    if results.empty:
        print("No kBET results to plot")
        return

    data = results.copy()
    if level_order is not None:
        order = [lv for lv in level_order if lv in set(data["level"])]
        data["level"] = pd.Categorical(data["level"], categories=order, ordered=True)
        data = data.sort_values("level")

    fig, ax = plt.subplots(figsize=(7, 4.5))
    sns.lineplot(data=data, x="level", y="acceptance_rate", hue="celltype", marker="o", ax=ax)
    ax.set_ylim(0, 1.05)
    ax.set_xlabel("Condition")
    ax.set_ylabel("kBET acceptance rate")
    ax.legend(title="Cell type", bbox_to_anchor=(1.0, 1.0), loc="upper left")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "kbet_acceptance.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/kbet_acceptance.png")
        plt.close(fig)
    else:
        plt.show()
