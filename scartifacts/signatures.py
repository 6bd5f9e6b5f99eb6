#!/usr/bin/env python3
"""
Artifact signature utilities
Derive gene signatures from DE results, score them in other datasets and compare them
"""

from itertools import combinations
from pathlib import Path

import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats

from scartifacts.config import SIGNATURE_PARAMS

DIRECTIONS = ("up", "down", "both")


def derive_signature(de_results, contrast=None, cell_type=None, direction="up", top_n=None):
    """Significant genes of a DE table ranked by fold change

    Args:
        de_results: DE results DataFrame (gene, logFC, significant, ...)
        contrast: Restrict to one contrast (optional)
        cell_type: Restrict to one cell type (optional)
        direction: "up", "down" or "both"
        top_n: Maximum number of genes (defaults to SIGNATURE_PARAMS["top_n"])

    Returns:
        List of gene symbols
    """
    if direction not in DIRECTIONS:
        raise ValueError(f"Unknown direction: {direction}. Use one of {DIRECTIONS}")
    top_n = top_n or SIGNATURE_PARAMS["top_n"]

    subset = de_results[de_results["significant"].astype(bool)]
    if contrast is not None:
        subset = subset[subset["contrast"] == contrast]
    if cell_type is not None:
        subset = subset[subset["cell_type"] == cell_type]

    if direction == "up":
        subset = subset[subset["logFC"] > 0].sort_values("logFC", ascending=False)
    elif direction == "down":
        subset = subset[subset["logFC"] < 0].sort_values("logFC", ascending=True)
    else:
        subset = subset.reindex(subset["logFC"].abs().sort_values(ascending=False).index)

    genes = subset.drop_duplicates(subset="gene")["gene"].head(top_n).tolist()
    print(f"Signature ({direction}): {len(genes)} genes")
    return genes


def read_gene_list(path, column="gene"):
    """Read a published signature: plain text (one gene per line) or a table with a gene column"""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Gene list not found: {path}")

    if path.suffix in (".csv", ".tsv"):
        sep = "\t" if path.suffix == ".tsv" else ","
        table = pd.read_csv(path, sep=sep)
        if column not in table.columns:
            raise ValueError(f"Missing required columns: ['{column}']")
        genes = table[column].dropna().astype(str).tolist()
    else:
        genes = [line.strip() for line in path.read_text().splitlines()]
        genes = [g for g in genes if g and not g.startswith("#")]

    return list(dict.fromkeys(genes))


def score_signature(adata, genes, name):
    """Module score for a gene signature

    Genes absent from the dataset are dropped.

    Returns:
        Name of the obs column holding the score
    """
    use_raw = adata.raw is not None
    var_names = adata.raw.var_names if use_raw else adata.var_names
    present = [g for g in genes if g in var_names]

    if len(present) < 1:
        raise ValueError(f"None of the {len(genes)} signature genes are present in the data")

    score_name = f"{name}_score"
    print(f"Calculating score for {name} ({len(present)}/{len(genes)} genes)")
    sc.tl.score_genes(adata, gene_list=present, score_name=score_name, use_raw=use_raw)

    return score_name


def flag_affected_cells(
    adata,
    score_col,
    condition="time",
    reference="0h",
    percentile=SIGNATURE_PARAMS["score_percentile"],
):
    """Flag cells scoring above a percentile of the reference condition

    Side effects:
        - Adds boolean obs column `<score_col>_affected`
        - Stores the threshold in uns[`<score_col>_threshold`]

    Returns:
        DataFrame indexed by condition level: n_cells, n_affected, fraction_affected
    """
    missing = [c for c in (score_col, condition) if c not in adata.obs]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    is_ref = (adata.obs[condition].astype(str) == str(reference)).values
    if not is_ref.any():
        raise ValueError(f"No cells in reference level {reference!r}")

    threshold = float(np.percentile(adata.obs.loc[is_ref, score_col], percentile))
    flag_col = f"{score_col}_affected"
    adata.obs[flag_col] = adata.obs[score_col] > threshold
    adata.uns[f"{score_col}_threshold"] = threshold

    summary = adata.obs.groupby(condition, observed=True).agg(
        n_cells=(flag_col, "size"),
        n_affected=(flag_col, "sum"),
    )
    summary["n_affected"] = summary["n_affected"].astype(int)
    summary["fraction_affected"] = summary["n_affected"] / summary["n_cells"]

    print(f"Threshold ({percentile}th percentile of {reference}): {threshold:.3f}")
    for level, row in summary.iterrows():
        print(f"  {level}: {row['fraction_affected']*100:.1f}% affected")

    return summary


def compare_signatures(signatures, universe_size):
    """Pairwise overlap of gene signatures

    Args:
        signatures: Dictionary of signature name -> gene list
        universe_size: Number of genes that could have been detected

    Returns:
        DataFrame with one row per pair: sizes, overlap, Jaccard index and
        hypergeometric p-value of an overlap at least this large
    """
    rows = []
    for (name_a, genes_a), (name_b, genes_b) in combinations(signatures.items(), 2):
        set_a, set_b = set(genes_a), set(genes_b)
        shared = set_a & set_b
        union = set_a | set_b
        pval = stats.hypergeom.sf(len(shared) - 1, universe_size, len(set_a), len(set_b))
        rows.append(
            {
                "signature_a": name_a,
                "signature_b": name_b,
                "size_a": len(set_a),
                "size_b": len(set_b),
                "overlap": len(shared),
                "jaccard": len(shared) / len(union) if union else 0.0,
                "pval": float(pval),
                "shared_genes": ",".join(sorted(shared)),
            }
        )

    return pd.DataFrame(
        rows,
        columns=["signature_a", "signature_b", "size_a", "size_b", "overlap", "jaccard", "pval", "shared_genes"],
    )


def compare_fold_changes(de_a, de_b, on="gene", value_col="logFC", suffixes=("_a", "_b")):
    """Correlate log fold changes of two DE tables over their shared genes

    Returns:
        Tuple of (merged DataFrame, summary dict with n_shared and
        Pearson/Spearman coefficients and p-values)
    """
    left = de_a.groupby(on)[value_col].mean()
    right = de_b.groupby(on)[value_col].mean()
    merged = pd.concat(
        [left.rename(value_col + suffixes[0]), right.rename(value_col + suffixes[1])], axis=1, join="inner"
    ).dropna()

    if len(merged) < 3:
        raise ValueError(f"Only {len(merged)} shared genes, need at least 3")

    x = merged[value_col + suffixes[0]]
    y = merged[value_col + suffixes[1]]
    pearson_r, pearson_p = stats.pearsonr(x, y)
    spearman_r, spearman_p = stats.spearmanr(x, y)

    summary = {
        "n_shared": len(merged),
        "pearson_r": float(pearson_r),
        "pearson_p": float(pearson_p),
        "spearman_r": float(spearman_r),
        "spearman_p": float(spearman_p),
    }
    print(f"Shared genes: {summary['n_shared']}, Pearson r = {pearson_r:.2f}, Spearman rho = {spearman_r:.2f}")

    return merged.reset_index().rename(columns={"index": on}), summary


def plot_signature_scores(adata, score_col, condition="time", hue=None, save_dir=None):
    """Box plots of a signature score per condition level"""
    data = adata.obs[[score_col, condition] + ([hue] if hue else [])]

    fig, ax = plt.subplots(figsize=(8, 4.5))
    sns.boxplot(data=data, x=condition, y=score_col, hue=hue, ax=ax, showfliers=False)
    threshold = adata.uns.get(f"{score_col}_threshold")
    if threshold is not None:
        ax.axhline(threshold, color="red", linestyle="--", linewidth=1)
    ax.set_xlabel(condition)
    ax.set_ylabel(score_col)
    if hue:
        ax.legend(title=hue, bbox_to_anchor=(1.0, 1.0), loc="upper left")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / f"{score_col}_by_{condition}.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/{score_col}_by_{condition}.png")
        plt.close(fig)
    else:
        plt.show()


def plot_signature_overlap(overlap_df, value="jaccard", save_dir=None):
    """Symmetric heatmap of pairwise signature overlap"""
    if overlap_df.empty:
        print("No signature pairs to plot")
        return

    names = list(dict.fromkeys(overlap_df["signature_a"].tolist() + overlap_df["signature_b"].tolist()))
    matrix = pd.DataFrame(np.nan, index=names, columns=names)
    for _, row in overlap_df.iterrows():
        matrix.loc[row["signature_a"], row["signature_b"]] = row[value]
        matrix.loc[row["signature_b"], row["signature_a"]] = row[value]

    fig, ax = plt.subplots(figsize=(1.2 * len(names) + 3, 1.0 * len(names) + 2))
    sns.heatmap(matrix, annot=True, fmt=".2f", cmap="viridis", ax=ax, cbar_kws={"label": value})
    ax.set_title("Signature overlap")
    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "signature_overlap.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/signature_overlap.png")
        plt.close(fig)
    else:
        plt.show()

    return matrix
